from __future__ import annotations

import json
import os
import ssl
from functools import lru_cache
from typing import Any
from urllib.error import HTTPError
from urllib.parse import urlencode, urlsplit
from urllib.request import Request, urlopen

import certifi

USER_AGENT = "hedge-bot/0.1"


def _resolve_ca_bundle() -> tuple[str | None, str | None]:
    env_cafile = os.getenv("SSL_CERT_FILE")
    if env_cafile:
        return env_cafile, None

    env_capath = os.getenv("SSL_CERT_DIR")
    if env_capath:
        return None, env_capath

    return certifi.where(), None


@lru_cache(maxsize=1)
def _ssl_context() -> ssl.SSLContext:
    cafile, capath = _resolve_ca_bundle()
    return ssl.create_default_context(cafile=cafile, capath=capath)


def build_url(url: str, params: dict[str, str] | None = None) -> str:
    if not params:
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode(params)}"


def get_json(url: str, params: dict[str, str] | None = None, timeout: float = 10.0) -> Any:
    """
    GET a JSON document.  Non-2xx answers raise RuntimeError naming the
    endpoint path; transport failures and timeouts surface as OSError and
    malformed bodies as ValueError.
    """
    request = Request(build_url(url, params), headers={"User-Agent": USER_AGENT, "Accept": "application/json"})
    try:
        with urlopen(request, timeout=timeout, context=_ssl_context()) as response:
            body = response.read().decode("utf-8")
    except HTTPError as exc:
        raise RuntimeError(f"GET {urlsplit(url).path or '/'} status={exc.code}") from exc
    return json.loads(body)
