# portal/routes_core.py
from flask import Blueprint, jsonify, session
from datetime import datetime

from storage.db import db_connect

core_bp = Blueprint("core", __name__)


@core_bp.get("/")
def index():
    user = session.get("user") or {}
    return jsonify({"app": "partymenu", "user": user.get("username")})


@core_bp.get("/health")
def health():
    return jsonify({"status": "ok", "time": datetime.utcnow().isoformat(timespec="seconds") + "Z"})


@core_bp.get("/db/health")
def db_health():
    with db_connect() as conn:
        def count(table):
            return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

        return jsonify({
            "ok": True,
            "events": count("events"),
            "categories": count("categories"),
            "menu_items": count("menu_items"),
            "bundles": count("bundles"),
        })
