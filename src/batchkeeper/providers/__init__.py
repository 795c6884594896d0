from __future__ import annotations

import typing as t

from batchkeeper.providers.base import BaseProvider
from batchkeeper.providers.mock import MockProvider
from batchkeeper.providers.openai import OpenAIProvider

if t.TYPE_CHECKING:
    from batchkeeper.clock import Clock
    from batchkeeper.config import Settings

__all__ = ["BaseProvider", "MockProvider", "OpenAIProvider", "get_provider"]


def get_provider(settings: "Settings", *, clock: "Clock | None" = None) -> BaseProvider:
    """
    Build the provider selected by the settings.

    Parameters
    ----------
    settings : Settings
        Runtime settings; ``mock_mode`` selects the in-process mock.
    clock : Clock | None
        Clock driving the mock's stage progression.

    Returns
    -------
    BaseProvider
        The provider instance.
    """
    if settings.mock_mode:
        return MockProvider(clock=clock)
    return OpenAIProvider(api_key=settings.openai_api_key or "", base_url=settings.openai_base_url)
