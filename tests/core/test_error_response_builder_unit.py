import json

from core.error_handler import _build_error_response


def test_build_error_response_production_hides_optional_fields():
    resp = _build_error_response(
        correlation_id="cid",
        error_type="domain_error",
        message="The stream key is not valid",
        environment="production",
        details={"stream_key": "bad key"},
        traceback_str="trace",
        exception_type="InvalidStreamKeyError",
        validation_errors=[{"loc": ["path", "stream_key"]}],
        status_code=400,
    )
    body = json.loads(resp.body)

    assert resp.status_code == 400
    assert body["success"] is False
    assert body["message"] == "The stream key is not valid"
    assert body["error"] == {"correlation_id": "cid", "type": "domain_error"}


def test_build_error_response_development_includes_optional_fields():
    resp = _build_error_response(
        correlation_id="cid",
        error_type="internal_server_error",
        message="An internal error occurred",
        environment="development",
        details={"debug": True},
        traceback_str="trace",
        exception_type="ValueError",
        validation_errors={"x": 1},
        status_code=500,
    )
    body = json.loads(resp.body)

    assert resp.status_code == 500
    assert body["error"]["details"] == {"debug": True}
    assert body["error"]["traceback"] == "trace"
    assert body["error"]["exception_type"] == "ValueError"
    assert body["error"]["validation_errors"] == {"x": 1}


def test_build_error_response_omits_empty_fields_in_development():
    resp = _build_error_response(
        correlation_id="cid",
        error_type="internal_server_error",
        message="An internal error occurred",
        environment="development",
    )
    body = json.loads(resp.body)

    assert set(body["error"]) == {"correlation_id", "type"}
