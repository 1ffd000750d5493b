# mentor/api/identity.py
#
# Caller identity. Authentication happens in front of this service; the
# authenticating proxy forwards the verified caller id in a header.
# Deployments with a different auth layer pass their own resolver to
# create_app().

from __future__ import annotations

from typing import Awaitable, Callable, Optional, Union

from fastapi import Request

CALLER_ID_HEADER = "X-Caller-Id"

IdentityResolver = Callable[[Request], Union[Optional[str], Awaitable[Optional[str]]]]


def header_identity(request: Request) -> Optional[str]:
    value = (request.headers.get(CALLER_ID_HEADER) or "").strip()
    return value or None
