# api_helpers.py
from flask import request, jsonify

def json_body() -> dict | None:
    """Parsed JSON object body, or None when the body is not a JSON object."""
    data = request.get_json(force=True, silent=True)
    return data if isinstance(data, dict) else None

def text(data: dict, key: str) -> str:
    v = data.get(key)
    if v is None:
        return ""
    return str(v).strip()

def error(message: str, status: int = 400, **extra):
    out = {"error": message}
    out.update(extra)
    return jsonify(out), status

def mask(addr: str | None) -> str:
    if not addr: return ""
    addr = addr.strip()
    if len(addr) <= 8: return addr[:1] + "…"
    return f"{addr[:4]}…{addr[-4:]}"
