"""Gateway token injection for bridged client sessions.

Clients put gateway auth in the ``connect`` request payload
(``params.auth.token``). When a session is bridged through this service the
client should not need to know the token, so it is injected here.
"""

import json
from typing import Any, Optional


def inject_gateway_token(raw: str, token: Optional[str]) -> str:
    """Return ``raw`` rewritten to authenticate with ``token``.

    Only ``{"type": "req", "method": "connect", "params": {...}}`` frames are
    touched; anything else (including invalid JSON) comes back unchanged.
    ``params.device`` is dropped since a device signature no longer verifies
    once the token is swapped, and ``auth.password`` is dropped so token auth
    takes precedence.
    """
    token = (token or "").strip()
    if not token:
        return raw

    try:
        msg: Any = json.loads(raw)
    except (TypeError, ValueError, RecursionError):
        return raw

    if not isinstance(msg, dict):
        return raw
    if msg.get("type") != "req" or msg.get("method") != "connect":
        return raw

    params = msg.get("params")
    if not isinstance(params, dict):
        return raw

    auth = dict(params["auth"]) if isinstance(params.get("auth"), dict) else {}
    auth["token"] = token
    auth.pop("password", None)

    next_params = dict(params)
    next_params["auth"] = auth
    next_params.pop("device", None)

    next_msg = dict(msg)
    next_msg["params"] = next_params
    return json.dumps(next_msg, separators=(",", ":"))
