"""
Proxy Routes - Upstream Request Forwarding
==========================================

Forwards every request that passed the gate to UPSTREAM_URL and relays the
upstream response back unchanged.

Header handling:
----------------
1. Hop-by-hop headers and Host are dropped in both directions
2. Content-Length is recomputed by the HTTP client
3. Everything else, including the request body, is passed through
"""

import logging
from typing import Dict, Iterable, List, Tuple

import httpx
from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import Response

logger = logging.getLogger(__name__)

proxy_router = APIRouter(tags=["proxy"])

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


# ============================================================================
# Header Functions
# ============================================================================

def filter_request_headers(headers: Iterable[Tuple[str, str]]) -> Dict[str, str]:
    """
    Build headers for the upstream request.

    Args:
        headers: Original request headers as (name, value) pairs

    Returns:
        Headers without hop-by-hop fields, Host or Content-Length
    """
    dropped = HOP_BY_HOP_HEADERS | {"host", "content-length"}
    return {name: value for name, value in headers if name.lower() not in dropped}


def filter_response_headers(headers: httpx.Headers) -> List[Tuple[str, str]]:
    # The body is relayed decoded, so its original encoding and length no longer apply.
    dropped = HOP_BY_HOP_HEADERS | {"content-length", "content-encoding"}
    return [(name, value) for name, value in headers.multi_items() if name.lower() not in dropped]


def upstream_url_for(base_url: str, request: Request) -> str:
    url = f"{base_url}{request.url.path}"
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


# ============================================================================
# Proxy Endpoint
# ============================================================================

@proxy_router.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
async def proxy_upstream(request: Request, path: str) -> Response:
    """
    Forward the request to the upstream application.

    Returns:
        Upstream status, headers and body

    Raises:
        HTTPException: 504 on upstream timeout, 502 if it cannot be reached
    """
    gate_state = request.app.state
    target = upstream_url_for(gate_state.settings.upstream_url_str, request)
    body = await request.body()

    try:
        upstream_response = await gate_state.http_client.request(
            request.method,
            target,
            content=body,
            headers=filter_request_headers(request.headers.items()),
        )
    except httpx.TimeoutException:
        logger.error("Upstream request timeout", extra={"path": request.url.path})
        raise HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail="Upstream service timeout",
        )
    except httpx.HTTPError as e:
        logger.error(f"Upstream request failed: {e}", extra={"path": request.url.path})
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Cannot reach upstream service",
        )

    logger.debug(
        "Proxied request",
        extra={"path": request.url.path, "status_code": upstream_response.status_code},
    )
    response = Response(content=upstream_response.content, status_code=upstream_response.status_code)
    for name, value in filter_response_headers(upstream_response.headers):
        response.headers.append(name, value)
    return response
