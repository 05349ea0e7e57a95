#!/usr/bin/env python3

"""
LogWarden Admin API

Small JSON HTTP service for manual rule management: permanent allow and
deny entries, temporary entries with a duration, and per-address status.
Changes are persisted to the same files the daemon reads and applied to
the packet filter immediately.

Endpoints:
- GET    /health
- GET    /status/<ip>
- POST   /allow            {"address": "...", "comment": "..."}
- DELETE /allow/<ip>
- POST   /deny             {"address": "...", "comment": "..."}
- DELETE /deny/<ip>
- GET    /temp/<kind>      kind is "deny" or "allow"
- POST   /temp/<kind>      {"address": "...", "duration": 3600, "scope": "inout", "ports": "", "comment": ""}
- DELETE /temp/<kind>/<ip>
- DELETE /temp/<kind>      remove all entries not marked "do not delete"

Usage:
    sudo logwarden-admin

The service listens on 127.0.0.1:9000 by default (ADMIN_HOST / ADMIN_PORT).
"""

import sys
from dataclasses import asdict

from flask import Flask, jsonify, request

from logwarden.modules.admin import AdminService
from logwarden.modules.config import load_config
from logwarden.modules.errors import (
    AdminError,
    ConfigError,
    ExemptAddressError,
    InvalidAddressError,
    ProtectedEntryError,
)
from logwarden.modules.logging_utils import configure_logging, get_logger

app = Flask(__name__)

logger = get_logger("admin_api")

# Global service instance, set by init_admin()
admin_service = None

TEMP_KINDS = ("deny", "allow")


def init_admin(service: AdminService = None, config=None) -> AdminService:
    """Install the AdminService the endpoints operate on."""
    global admin_service

    if service is None:
        service = AdminService.from_config(config or load_config())
    admin_service = service
    return admin_service


def _payload() -> dict:
    if request.is_json:
        return request.get_json(silent=True) or {}
    return dict(request.form)


def _error(message: str, code: int):
    return jsonify({"status": "error", "message": message}), code


@app.errorhandler(AdminError)
def handle_admin_error(error):
    if isinstance(error, InvalidAddressError):
        code = 400
    elif isinstance(error, (ProtectedEntryError, ExemptAddressError)):
        code = 409
    else:
        code = 400
    logger.warning("Admin request refused", path=request.path, reason=str(error))
    return _error(str(error), code)


@app.errorhandler(ValueError)
def handle_value_error(error):
    return _error(str(error), 400)


@app.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint."""
    return jsonify({"status": "healthy"}), 200


@app.route('/status/<path:address>', methods=['GET'])
def address_status(address):
    return jsonify(admin_service.status(address)), 200


@app.route('/allow', methods=['POST'])
def allow_add():
    data = _payload()
    address = data.get("address", "")
    applied = admin_service.allow_add(address, data.get("comment", ""))
    return jsonify({"status": "success", "address": address, "applied": applied}), 201


@app.route('/allow/<path:address>', methods=['DELETE'])
def allow_remove(address):
    if not admin_service.allow_remove(address):
        return _error(f"{address} is not in the allow list", 404)
    return jsonify({"status": "success", "address": address}), 200


@app.route('/deny', methods=['POST'])
def deny_add():
    data = _payload()
    address = data.get("address", "")
    applied = admin_service.deny_add(address, data.get("comment", ""))
    return jsonify({"status": "success", "address": address, "applied": applied}), 201


@app.route('/deny/<path:address>', methods=['DELETE'])
def deny_remove(address):
    if not admin_service.deny_remove(address):
        return _error(f"{address} is not denied", 404)
    return jsonify({"status": "success", "address": address}), 200


@app.route('/temp/<kind>', methods=['GET'])
def temp_list(kind):
    if kind not in TEMP_KINDS:
        return _error(f"Unknown temporary entry kind: {kind}", 404)
    entries = [asdict(entry) for entry in admin_service.temp_list(kind)]
    return jsonify({"kind": kind, "entries": entries}), 200


@app.route('/temp/<kind>', methods=['POST'])
def temp_add(kind):
    if kind not in TEMP_KINDS:
        return _error(f"Unknown temporary entry kind: {kind}", 404)
    data = _payload()
    try:
        duration = int(data.get("duration", 0))
    except (TypeError, ValueError):
        return _error("duration must be an integer number of seconds", 400)

    entry = admin_service.temp_add(
        kind,
        data.get("address", ""),
        duration,
        scope=data.get("scope", "inout"),
        ports=str(data.get("ports", "")),
        comment=data.get("comment", ""),
    )
    return jsonify({"status": "success", "entry": asdict(entry)}), 201


@app.route('/temp/<kind>/<path:address>', methods=['DELETE'])
def temp_remove(kind, address):
    if kind not in TEMP_KINDS:
        return _error(f"Unknown temporary entry kind: {kind}", 404)
    entry = admin_service.temp_remove(kind, address)
    if entry is None:
        return _error(f"{address} has no temporary {kind} entry", 404)
    return jsonify({"status": "success", "entry": asdict(entry)}), 200


@app.route('/temp/<kind>', methods=['DELETE'])
def temp_flush(kind):
    if kind not in TEMP_KINDS:
        return _error(f"Unknown temporary entry kind: {kind}", 404)
    removed = admin_service.temp_flush(kind)
    return jsonify({"status": "success", "kind": kind, "removed": removed}), 200


def main():
    """Main entry point."""
    try:
        config = load_config()
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    configure_logging(log_file=config.log_file)
    init_admin(config=config)

    logger.info("Admin API binding", host=config.admin_host, port=config.admin_port)
    app.run(host=config.admin_host, port=config.admin_port, debug=False)


if __name__ == "__main__":
    main()
