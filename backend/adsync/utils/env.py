import logging
import os

from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger(__name__)


def load_env_file() -> None:
    """Populate os.environ from a local .env before the process reads config.

    WHY:
        Settings parses .env itself, but init_sentry reads RELEASE_VERSION and
        sentry_sdk reads its own SENTRY_* variables straight from os.environ. Variables
        already exported by the deploy environment always win.
    """
    path = find_dotenv(usecwd=True)
    if not path:
        logger.debug("[ENV] No .env file found from %s", os.getcwd())
        return

    load_dotenv(path, override=False)
    logger.info("[ENV] Loaded %s (exported variables take precedence)", path)
