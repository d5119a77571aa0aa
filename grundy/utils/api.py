from __future__ import annotations

from flask import jsonify, request

from grundy.services.order_store import StoreCode
from grundy.utils.observability import get_request_id

STORE_CODE_HTTP = {
    StoreCode.NOT_FOUND: 404,
    StoreCode.INVALID_TRANSITION: 409,
    StoreCode.ALREADY_ASSIGNED: 409,
    StoreCode.DUPLICATE_REFERENCE: 409,
    StoreCode.INVALID_ORDER: 400,
}


def api_error(error: str, message: str = "", status: int = 400, **extra):
    payload = {"ok": False, "error": error, "message": message or error, "status": int(status)}
    rid = get_request_id()
    if rid:
        payload["trace_id"] = rid
    payload.update(extra)
    return jsonify(payload), int(status)


def store_error(result):
    return api_error(
        result.code,
        result.message,
        STORE_CODE_HTTP.get(result.code, 400),
        order=result.order.to_dict() if result.order else None,
    )


def json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def first_value(data: dict, *keys, default=None):
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return default
