"""Client list for export declarations."""

from __future__ import annotations

from typing import Iterable

CLIENT_OPTIONS = "(ro,insecure,async,no_root_squash)"
LOCALHOST_CLIENT = "localhost(ro)"


def build_client_spec(addresses: Iterable[str]) -> str:
    """
    Render the export client list for ``addresses``.

    Every address gets the fixed read-only option set; ``localhost(ro)`` is
    always appended, so the result is never empty:

        build_client_spec(["10.0.0.5"])
        -> " 10.0.0.5(ro,insecure,async,no_root_squash) localhost(ro)"
    """
    spec = ""
    for address in addresses:
        spec = f"{spec} {address}{CLIENT_OPTIONS}"
    return f"{spec} {LOCALHOST_CLIENT}"
