"""Provider name parsing."""

from __future__ import annotations

DEFAULT_ORGANIZATION = "cloudquery"


def parse_provider_name(name: str) -> tuple[str, str]:
    """Split "org/provider" or "provider" into (organization, provider).

    The organization is lower-cased and defaults to the CloudQuery organization.
    """
    names = name.split("/")
    if len(names) == 2:
        return names[0].lower(), names[1]
    if len(names) == 1:
        return DEFAULT_ORGANIZATION, name
    raise ValueError(f"invalid provider name {name}")