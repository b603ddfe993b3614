from __future__ import annotations

import httpx

from meetbook.application.exceptions import GatewayUnavailable


def raise_for_status(response: httpx.Response, api: str = "calendar API") -> None:
    if 200 <= response.status_code < 300:
        return
    raise GatewayUnavailable(
        f"{api} request failed ({response.status_code}): {safe_error_message(response)}",
        status_code=response.status_code,
    )


def safe_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return " ".join(error["message"].split())[:200]
        if isinstance(error, str) and error.strip():
            return " ".join(error.split())[:200]

    text = response.text.strip()
    return " ".join(text.split())[:200] if text else "no error payload"
