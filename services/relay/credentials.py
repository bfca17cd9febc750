"""Credential placement strategies tried in order against an upstream provider."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Tuple


@dataclass(frozen=True)
class CredentialStrategy:
    """Where to put the caller's credential on an outbound request.

    Attributes:
        name: Short label used in logs.
        header: Header receiving the credential.
        template: Format string for the header value.
    """

    name: str
    header: str
    template: str = "{credential}"

    def headers(self, credential: str) -> Dict[str, str]:
        return {self.header: self.template.format(credential=credential)}


BEARER_TOKEN = CredentialStrategy("bearer", "Authorization", "Bearer {credential}")
API_KEY_HEADER = CredentialStrategy("api-key-header", "X-API-Key")

# The next strategy is only tried after an authentication rejection (401).
DEFAULT_STRATEGIES: Tuple[CredentialStrategy, ...] = (BEARER_TOKEN, API_KEY_HEADER)
