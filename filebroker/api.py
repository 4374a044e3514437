"""HTTP front door: enqueue instructions and poll for their responses."""
from __future__ import annotations

from typing import Optional

from flask import Flask, jsonify, request
from flask_cors import CORS

from filebroker.client import BrokerClient
from filebroker.codec import is_valid_session_id


def create_app(client: BrokerClient, max_wait: Optional[float] = None) -> Flask:
    app = Flask(__name__)
    CORS(app)
    app.config["BROKER_CLIENT"] = client
    wait_cap = client.config.response_timeout if max_wait is None else max_wait

    @app.route("/api/instructions", methods=["POST"])
    def send_instruction():
        """Write a request artifact for the broker."""
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"status": "error", "message": "Invalid JSON in request body"}), 400

        instruction = data.get("instruction")
        session_id = data.get("sessionId")
        if not isinstance(instruction, str) or not instruction.strip():
            return jsonify({"status": "error", "message": "Missing required field: instruction"}), 400
        if session_id is not None and not is_valid_session_id(session_id):
            return jsonify({"status": "error", "message": "Invalid sessionId"}), 400

        sid = client.enqueue(instruction, session_id=session_id)
        return jsonify({"status": "queued", "sessionId": sid}), 202

    def _result_response(sid: str, result):
        if result is None or result.timed_out:
            return jsonify({"status": "pending", "sessionId": sid}), 202
        if result.malformed:
            return jsonify({"status": "malformed", "sessionId": sid, "problems": result.problems}), 422
        return jsonify(result.payload), 200

    @app.route("/api/responses/<session_id>", methods=["GET"])
    def get_response(session_id: str):
        """Return the response artifact, or 202 while it does not exist yet."""
        if not is_valid_session_id(session_id):
            return jsonify({"status": "error", "message": "Invalid sessionId"}), 400
        return _result_response(session_id, client.read_response(session_id))

    @app.route("/api/responses/<session_id>/wait", methods=["GET"])
    def wait_response(session_id: str):
        """Long-poll for the response, bounded by the server's wait cap."""
        if not is_valid_session_id(session_id):
            return jsonify({"status": "error", "message": "Invalid sessionId"}), 400
        try:
            timeout = float(request.args.get("timeout", wait_cap))
        except ValueError:
            return jsonify({"status": "error", "message": "timeout must be a number"}), 400
        timeout = max(0.0, min(timeout, wait_cap))
        return _result_response(session_id, client.wait_for_response(session_id, timeout=timeout))

    @app.route("/health", methods=["GET"])
    def health():
        """Health check endpoint."""
        return jsonify(
            {
                "status": "ok",
                "service": "filebroker",
                "directory_ok": client.directory.reachable(),
            }
        )

    return app
