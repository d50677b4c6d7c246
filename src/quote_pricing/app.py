from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from flask import Flask, jsonify, request
from werkzeug.exceptions import BadRequest, HTTPException

from .db import SqliteRepository, init_db
from .engine import EngineResult, PricingEngine
from .formula import FormulaSyntaxError
from .id_mapping import IdMapping, build_mapping, to_user_formula
from .integrity import FormField, check_integrity, remove_orphan
from .parameters import ParameterError, ParameterStore, PriceParameter

ERROR_STATUS = {
    "validation": 400,
    "not-found": 404,
    "integrity": 409,
    "evaluation": 422,
    "comparison": 502,
}


def _db_path(app: Flask) -> Path:
    return Path(app.config["DATABASE_PATH"])


def _configure_observability(app: Flask, app_name: str) -> None:
    app.config["APP_NAME"] = app_name
    level_name = os.environ.get("APP_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    app.logger.setLevel(level)
    logging.getLogger("quote_pricing").setLevel(level)


def _is_api_request() -> bool:
    return request.path.startswith("/api/")


def _configure_error_handlers(app: Flask) -> None:
    @app.errorhandler(ParameterError)
    def handle_parameter_error(error: ParameterError) -> Any:
        app.logger.warning("invalid_parameters", extra={"path": request.path, "error": str(error)})
        return jsonify({"error": str(error), "kind": "validation", "code": "invalid-parameters"}), 400

    @app.errorhandler(BadRequest)
    def handle_bad_request(error: BadRequest) -> Any:
        app.logger.warning("bad_request", extra={"path": request.path, "method": request.method, "error": str(error)})
        if _is_api_request():
            return jsonify({"error": "invalid request payload"}), 400
        return error

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException) -> Any:
        app.logger.warning(
            "http_error",
            extra={"path": request.path, "method": request.method, "status_code": error.code, "error": error.description},
        )
        if _is_api_request():
            return jsonify({"error": error.description}), error.code
        return error

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception) -> Any:
        app.logger.exception("unexpected_error", extra={"path": request.path, "method": request.method})
        if _is_api_request():
            return jsonify({"error": "internal server error"}), 500
        raise error


def _json_body() -> dict[str, Any]:
    body = request.get_json(force=True, silent=False) or {}
    if not isinstance(body, dict):
        raise BadRequest("JSON object expected")
    return body


def _parameters_from_body(body: dict[str, Any]) -> list[PriceParameter]:
    raw_parameters = body.get("parameters") or []
    if not isinstance(raw_parameters, list):
        raise ParameterError("parameters must be a list")
    parameters = [PriceParameter.from_dict(item) for item in raw_parameters]
    return ParameterStore(parameters).list()


def _catalog_from_body(body: dict[str, Any]) -> list[FormField] | None:
    raw_catalog = body.get("catalog")
    if raw_catalog is None:
        return None
    return [FormField.from_dict(item) for item in raw_catalog]


def _payload(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, list):
        return [_payload(item) for item in value]
    return value


def _result_response(result: EngineResult[Any], status: int = 200) -> Any:
    if result.ok:
        return jsonify(_payload(result.value)), status
    error = result.error
    return jsonify({"error": error.message, **error.to_dict()}), ERROR_STATUS.get(error.kind, 400)


def _setting_payload(setting: Any) -> dict[str, Any]:
    payload = setting.to_dict()
    mapping = build_mapping(setting.parameters)
    payload["mapping"] = mapping.to_dict()
    try:
        payload["user_formula"] = to_user_formula(setting.formula, mapping)
    except FormulaSyntaxError:
        payload["user_formula"] = setting.formula
    return payload


def _int_or_none(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise BadRequest(f"invalid id: {value!r}") from exc


def create_pricing_app(database_path: str | None = None) -> Flask:
    app = Flask(__name__)
    _configure_observability(app, "pricing")
    _configure_error_handlers(app)
    app.config["DATABASE_PATH"] = database_path or os.environ.get("PRICING_DB_PATH", "./pricing.db")
    app.config["PRICE_DRIFT_EPSILON"] = float(os.environ.get("PRICE_DRIFT_EPSILON", "0.01"))
    init_db(_db_path(app))

    repository = SqliteRepository(_db_path(app))
    engine = PricingEngine(repository, repository, repository, epsilon=app.config["PRICE_DRIFT_EPSILON"])

    @app.get("/healthz")
    def healthz() -> Any:
        return jsonify({"status": "ok", "service": app.config["APP_NAME"]})

    @app.get("/api/price-settings")
    def list_price_settings() -> Any:
        return jsonify([_setting_payload(setting) for setting in repository.list_settings()])

    @app.get("/api/price-settings/active")
    def active_price_setting() -> Any:
        setting = repository.get_active_setting()
        if setting is None:
            return jsonify({"error": "no active price setting"}), 404
        return jsonify(_setting_payload(setting))

    @app.get("/api/price-settings/<int:setting_id>")
    def get_price_setting(setting_id: int) -> Any:
        setting = repository.get_setting(setting_id)
        if setting is None:
            return jsonify({"error": "price setting not found"}), 404
        return jsonify(_setting_payload(setting))

    @app.post("/api/price-settings")
    def create_price_setting() -> Any:
        body = _json_body()
        name = str(body.get("name", "")).strip()
        if not name:
            return jsonify({"error": "name is required"}), 400
        result = engine.save_setting(
            name=name,
            parameters=_parameters_from_body(body),
            user_formula=str(body.get("user_formula", "")),
            catalog=_catalog_from_body(body),
            activate=bool(body.get("activate", False)),
        )
        if not result.ok:
            return _result_response(result)
        app.logger.info("price_setting_created", extra={"setting_id": result.value.id})
        return jsonify(_setting_payload(result.value)), 201

    @app.patch("/api/price-settings/<int:setting_id>")
    def update_price_setting(setting_id: int) -> Any:
        existing = repository.get_setting(setting_id)
        if existing is None:
            return jsonify({"error": "price setting not found"}), 404
        body = _json_body()
        parameters = _parameters_from_body(body) if "parameters" in body else existing.parameters
        if "user_formula" in body:
            user_formula = str(body.get("user_formula") or "")
        else:
            try:
                user_formula = to_user_formula(existing.formula, build_mapping(parameters))
            except FormulaSyntaxError as exc:
                return jsonify({"error": exc.message, "code": "syntax", "position": exc.position}), 400
        result = engine.save_setting(
            name=str(body.get("name") or existing.name).strip(),
            parameters=parameters,
            user_formula=user_formula,
            setting_id=setting_id,
            catalog=_catalog_from_body(body),
            activate=bool(body.get("activate", False)),
        )
        if not result.ok:
            return _result_response(result)
        return jsonify(_setting_payload(result.value))

    @app.delete("/api/price-settings/<int:setting_id>")
    def delete_price_setting(setting_id: int) -> Any:
        setting = repository.get_setting(setting_id)
        if setting is None:
            return jsonify({"error": "price setting not found"}), 404
        if setting.is_active:
            return jsonify({"error": "the active price setting cannot be deleted"}), 409
        repository.delete_setting(setting_id)
        return jsonify({"deleted": setting_id})

    @app.post("/api/price-settings/<int:setting_id>/new-version")
    def new_price_setting_version(setting_id: int) -> Any:
        if repository.get_setting(setting_id) is None:
            return jsonify({"error": "price setting not found"}), 404
        setting = repository.create_new_version(setting_id)
        app.logger.info("price_setting_versioned", extra={"source_id": setting_id, "setting_id": setting.id})
        return jsonify(_setting_payload(setting)), 201

    @app.patch("/api/price-settings/<int:setting_id>/activate")
    def activate_price_setting(setting_id: int) -> Any:
        if repository.get_setting(setting_id) is None:
            return jsonify({"error": "price setting not found"}), 404
        setting = repository.activate_setting(setting_id)
        app.logger.info("price_setting_activated", extra={"setting_id": setting_id})
        return jsonify(_setting_payload(setting))

    @app.post("/api/price-settings/calculate")
    def calculate_price() -> Any:
        body = _json_body()
        form_data = body.get("form_data") or {}
        if not isinstance(form_data, dict):
            return jsonify({"error": "form_data must be an object"}), 400
        return _result_response(engine.calculate_price(_int_or_none(body.get("price_setting_id")), form_data))

    @app.post("/api/price-settings/compare")
    def compare_price_settings() -> Any:
        body = _json_body()
        old_setting_id = _int_or_none(body.get("old_setting_id"))
        if old_setting_id is None:
            return jsonify({"error": "old_setting_id is required"}), 400
        return _result_response(engine.compare_settings(old_setting_id, _int_or_none(body.get("new_setting_id"))))

    @app.get("/api/form-fields")
    def list_form_fields() -> Any:
        include_inactive = request.args.get("include_inactive") in {"1", "true", "yes"}
        return jsonify(repository.list_form_fields(include_inactive=include_inactive))

    @app.patch("/api/form-fields/<field_code>")
    def update_form_field(field_code: str) -> Any:
        body = _json_body()
        if "is_active" not in body:
            return jsonify({"error": "is_active is required"}), 400
        if not repository.set_field_active(field_code, bool(body["is_active"])):
            return jsonify({"error": "form field not found"}), 404
        app.logger.info("form_field_updated", extra={"field_code": field_code, "is_active": bool(body["is_active"])})
        return jsonify({"field_code": field_code, "is_active": bool(body["is_active"])})

    @app.post("/api/formula/validate")
    def validate_formula() -> Any:
        body = _json_body()
        result = engine.validate_formula(str(body.get("user_formula", "")), _parameters_from_body(body))
        return jsonify(result.to_dict())

    @app.post("/api/formula/convert")
    def convert_formula() -> Any:
        body = _json_body()
        if body.get("mapping") is not None:
            try:
                mapping = IdMapping.from_dict(body["mapping"])
            except ValueError as exc:
                return jsonify({"error": str(exc)}), 400
        else:
            mapping = build_mapping(_parameters_from_body(body))
        result = engine.convert_formula(str(body.get("formula", "")), mapping, str(body.get("direction", "to_user")))
        if not result.ok:
            return _result_response(result)
        return jsonify({"formula": result.value, "mapping": mapping.to_dict()})

    @app.post("/api/integrity")
    def integrity() -> Any:
        body = _json_body()
        result = engine.check_integrity(
            _parameters_from_body(body), _catalog_from_body(body), str(body.get("user_formula", ""))
        )
        return _result_response(result)

    @app.post("/api/parameters/remove-orphan")
    def remove_orphan_parameter() -> Any:
        body = _json_body()
        store = ParameterStore(_parameters_from_body(body))
        code = str(body.get("code", ""))
        catalog = _catalog_from_body(body) or repository.get_active_field_catalog()
        report = check_integrity(store, catalog, str(body.get("user_formula", "")))
        if code not in {parameter.code for parameter in report.orphan_parameters}:
            return jsonify({"error": f"'{code}' is not an orphan parameter"}), 400
        removal = remove_orphan(
            store,
            code,
            str(body.get("user_formula", "")),
            build_mapping(store),
            confirmed=bool(body.get("confirmed", False)),
        )
        payload = removal.to_dict()
        payload["parameters"] = [parameter.to_dict() for parameter in store]
        return jsonify(payload)

    @app.post("/api/quotes")
    def create_quote() -> Any:
        body = _json_body()
        form_data = body.get("form_data") or {}
        if not isinstance(form_data, dict):
            return jsonify({"error": "form_data must be an object"}), 400
        result = engine.calculate_price(_int_or_none(body.get("price_setting_id")), form_data)
        if not result.ok:
            return _result_response(result)
        quote = repository.create_quote(form_data, result.value.price_setting_id, result.value.total_price)
        return jsonify(quote.to_dict()), 201

    @app.get("/api/quotes/<int:quote_id>/price-status")
    def quote_price_status(quote_id: int) -> Any:
        return _result_response(engine.quote_status(quote_id))

    @app.post("/api/quotes/<int:quote_id>/apply-price")
    def quote_apply_price(quote_id: int) -> Any:
        return _result_response(engine.apply_new_price(quote_id))

    @app.post("/api/quotes/<int:quote_id>/update-version")
    def quote_update_version(quote_id: int) -> Any:
        return _result_response(engine.update_quote_version(quote_id))

    @app.post("/api/quotes/<int:quote_id>/hide-warning")
    def quote_hide_warning(quote_id: int) -> Any:
        return _result_response(engine.hide_quote_warning(quote_id))

    return app
