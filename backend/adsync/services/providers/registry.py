"""Adapter construction from settings.

Adapters are built per call site with an injected HTTP client; nothing is
cached here. Google per-integration credentials (developer token, manager
account) override the environment defaults when present.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import httpx

from adsync.deps import Settings
from adsync.models import ProviderEnum
from adsync.services.providers.base import ProviderAdapter, SleepFunc
from adsync.services.providers.google import GoogleAdsAdapter
from adsync.services.providers.linkedin import LinkedInAdsAdapter
from adsync.services.providers.meta import MetaAdsAdapter
from adsync.services.providers.tiktok import TikTokAdsAdapter


def build_adapter(
    provider: ProviderEnum,
    settings: Settings,
    http_client: httpx.AsyncClient,
    *,
    developer_token: Optional[str] = None,
    login_customer_id: Optional[str] = None,
    sleep: SleepFunc = asyncio.sleep,
) -> ProviderAdapter:
    provider = ProviderEnum(provider)

    if provider is ProviderEnum.google:
        return GoogleAdsAdapter(
            http_client,
            client_id=settings.GOOGLE_CLIENT_ID,
            client_secret=settings.GOOGLE_CLIENT_SECRET,
            developer_token=developer_token or settings.GOOGLE_DEVELOPER_TOKEN,
            login_customer_id=login_customer_id or settings.GOOGLE_LOGIN_CUSTOMER_ID,
            api_version=settings.GOOGLE_ADS_API_VERSION,
            sleep=sleep,
        )
    if provider is ProviderEnum.meta:
        return MetaAdsAdapter(
            http_client,
            app_id=settings.META_APP_ID,
            app_secret=settings.META_APP_SECRET,
            graph_version=settings.META_GRAPH_VERSION,
            sleep=sleep,
        )
    if provider is ProviderEnum.tiktok:
        return TikTokAdsAdapter(
            http_client,
            app_id=settings.TIKTOK_APP_ID,
            app_secret=settings.TIKTOK_APP_SECRET,
            sleep=sleep,
        )
    return LinkedInAdsAdapter(
        http_client,
        client_id=settings.LINKEDIN_CLIENT_ID,
        client_secret=settings.LINKEDIN_CLIENT_SECRET,
        sleep=sleep,
    )
