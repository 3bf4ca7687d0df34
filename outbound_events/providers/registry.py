from __future__ import annotations

from outbound_events.config import settings
from outbound_events.domain.ingestion_errors import UnknownProviderError
from outbound_events.providers.base import WebhookProvider
from outbound_events.providers.generic.webhook import GenericWebhookProvider
from outbound_events.providers.lemlist.webhook import LemlistWebhookProvider
from outbound_events.providers.phantombuster.webhook import PhantombusterWebhookProvider
from outbound_events.providers.postmark.webhook import PostmarkWebhookProvider


PROVIDERS: dict[str, WebhookProvider] = {
    provider.name: provider
    for provider in (
        LemlistWebhookProvider(),
        PostmarkWebhookProvider(),
        PhantombusterWebhookProvider(),
        GenericWebhookProvider(),
    )
}


def get_provider(name: str) -> WebhookProvider:
    provider = PROVIDERS.get(str(name or "").strip().lower())
    if provider is None:
        raise UnknownProviderError(f"Unsupported webhook provider: {name}", provider=name)
    return provider


def provider_secret(name: str) -> str | None:
    return getattr(settings, f"{name}_webhook_secret", None)
