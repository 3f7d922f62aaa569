"""HTTP front end of the registration API."""

from __future__ import annotations

import argparse
import json
import logging
import os
from typing import Any

from flask import Flask, jsonify, request

from openprio_api.service import ApiError, Service
from openprio_api.store import Store

logger = logging.getLogger(__name__)

_ANY_METHOD = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
PORT = 8080


def _read_json() -> Any:
    """Decode the first JSON value of the request body."""
    text = request.get_data(as_text=True).lstrip()
    if not text:
        raise ValueError("EOF")
    value, _ = json.JSONDecoder().raw_decode(text)
    return value


def create_app(service: Service) -> Flask:
    """Build the web application serving ``service``."""
    app = Flask(__name__)

    @app.errorhandler(ApiError)
    def _api_error(err: ApiError):
        return jsonify(err.to_dict()), err.status_code

    @app.route("/auth/generate_passcode", methods=_ANY_METHOD)
    def generate_passcode():
        return jsonify(service.generate_passcode().to_dict())

    @app.route("/register_device", methods=["POST"])
    def register_device():
        try:
            payload = _read_json()
        except ValueError as err:
            logger.warning("invalid register_device body: %s", err)
            payload = None
        return jsonify(service.register_device(payload).to_dict())

    @app.route("/auth/generate_vehicle_pre_registrations", methods=["POST"])
    def generate_vehicle_pre_registrations():
        try:
            payload = _read_json()
        except ValueError as err:
            raise ApiError(str(err), 400) from None
        results = service.generate_vehicle_pre_registrations(payload)
        return jsonify([result.to_dict() for result in results])

    @app.route("/register_vehicle", methods=["POST"])
    def register_vehicle():
        try:
            payload = _read_json()
        except ValueError:
            raise ApiError("Invalid vehiclePreRegistration.", 400) from None
        return jsonify(service.register_vehicle(payload).to_dict())

    return app


def _normalise_url(url: str) -> str:
    if url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://"):]
    return url


def main(argv: list[str] | None = None) -> None:
    """Serve the API on port 8080 using the database named by DB_URL."""
    parser = argparse.ArgumentParser(description="Device and vehicle registration API.")
    parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    url = os.environ.get("DB_URL", "")
    if not url:
        raise SystemExit("No ENV variable DB_URL specified.")
    store = Store.from_url(_normalise_url(url))
    app = create_app(Service(store))
    logger.info("start server :%d", PORT)
    app.run(host="0.0.0.0", port=PORT)


if __name__ == "__main__":
    main()