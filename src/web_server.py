import logging
import threading
import time
from pathlib import Path

from flask import Flask, Response, jsonify, request, stream_with_context

from ingest_errors import ConfigurationError
from ingest_version import VERSION
from log_receiver import QueueObserver
from media_files import (
    MediaFileError,
    create_destination,
    delete_with_proxy,
    list_destinations,
    list_media,
    move_with_proxy,
)

logger = logging.getLogger(__name__)

KEEPALIVE_SEC = 15.0


def create_app(broadcaster, store, engine, keepalive: float = KEEPALIVE_SEC):
    app = Flask(__name__)

    @app.route("/api/logs/stream")
    def log_stream():
        observer = QueueObserver()
        if not broadcaster.attach(observer):
            return jsonify({"ok": False, "error": "failed to replay log history"}), 500

        def generate():
            try:
                for line in observer.lines(keepalive=keepalive):
                    if line is None:
                        yield ": keepalive\n\n"
                    else:
                        # multi-line entries become one event with a data field per line
                        yield "".join(f"data: {part}\n" for part in line.split("\n")) + "\n"
            finally:
                observer.close()
                broadcaster.detach(observer)

        headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
        return Response(stream_with_context(generate()), mimetype="text/event-stream", headers=headers)

    @app.route("/api/logs")
    def logs():
        return jsonify({"lines": broadcaster.history()})

    @app.route("/api/status")
    def status():
        data = engine.status()
        data["version"] = VERSION
        data["observers"] = broadcaster.observer_count()
        data["timestamp"] = time.time()
        return jsonify(data)

    @app.route("/api/proxies")
    def proxies():
        items = list_media(store.current())
        broadcaster.publish("Listed %d files (including those without proxies)", len(items))
        return jsonify(items)

    @app.route("/api/reprocess", methods=["POST"])
    def reprocess():
        payload = request.get_json(silent=True) or {}
        snapshot = store.current()
        label = payload.get("label")
        if label:
            profile = snapshot.profile_for(label)
            if profile is None:
                return jsonify({"ok": False, "error": f"unknown label {label}"}), 404
            engine.reprocess([profile])
        else:
            engine.reprocess_all()
        return jsonify({"ok": True, "message": "Reprocessing started"})

    @app.route("/api/delete", methods=["DELETE"])
    def delete_video():
        payload = request.get_json(silent=True) or {}
        original = payload.get("original")
        proxy = payload.get("proxy")
        if not original or not proxy:
            return jsonify({"ok": False, "error": "original and proxy are required"}), 400
        try:
            delete_with_proxy(original, proxy)
        except FileNotFoundError as e:
            return jsonify({"ok": False, "error": str(e)}), 404
        except (OSError, MediaFileError) as e:
            logger.exception("Delete failed for %s", original)
            return jsonify({"ok": False, "error": str(e)}), 500
        broadcaster.publish("Deleted video: %s and proxy: %s", original, proxy)
        return jsonify({"ok": True})

    @app.route("/api/destinations", methods=["GET", "POST"])
    def destinations():
        base = store.current().destination_path
        if not base:
            return jsonify({"ok": False, "error": "destinationConfig.path is not set"}), 400
        if request.method == "GET":
            try:
                return jsonify(list_destinations(base))
            except OSError as e:
                return jsonify({"ok": False, "error": f"Error reading destinations: {e}"}), 500
        payload = request.get_json(silent=True) or {}
        try:
            folder = create_destination(base, payload.get("folderName", ""))
        except MediaFileError as e:
            return jsonify({"ok": False, "error": str(e)}), 400
        except OSError as e:
            return jsonify({"ok": False, "error": f"Error creating folder: {e}"}), 500
        return jsonify({"ok": True, "path": str(folder)}), 201

    @app.route("/api/move", methods=["POST"])
    def move_files():
        base = store.current().destination_path
        if not base:
            return jsonify({"ok": False, "error": "destinationConfig.path is not set"}), 400
        payload = request.get_json(silent=True) or {}
        files = payload.get("files")
        if not isinstance(files, list) or not files or not all(isinstance(f, str) for f in files):
            return jsonify({"ok": False, "error": "files must be a non-empty list of paths"}), 400
        try:
            moved = move_with_proxy(
                base, files, destination=payload.get("destination", ""), new_folder=payload.get("newFolder", "")
            )
        except FileNotFoundError as e:
            return jsonify({"ok": False, "error": str(e)}), 404
        except MediaFileError as e:
            return jsonify({"ok": False, "error": str(e)}), 400
        except OSError as e:
            logger.exception("Move failed")
            return jsonify({"ok": False, "error": f"Error moving files: {e}"}), 500
        broadcaster.publish("Moved %d files to %s", len(moved), Path(moved[0]).parent)
        return jsonify({"ok": True, "moved": moved})

    @app.route("/api/config")
    def config():
        try:
            return jsonify(store.read_raw())
        except (OSError, ValueError) as e:
            return jsonify({"ok": False, "error": f"Failed to read configuration: {e}"}), 500

    @app.route("/api/config/update", methods=["POST"])
    def config_update():
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return jsonify({"ok": False, "error": "Invalid configuration format"}), 400
        try:
            store.update(payload)
        except ConfigurationError as e:
            return jsonify({"ok": False, "error": str(e)}), 400
        except OSError as e:
            logger.exception("Failed to save configuration")
            return jsonify({"ok": False, "error": f"Failed to save configuration: {e}"}), 500
        broadcaster.publish("Configuration updated")
        return jsonify({"ok": True})

    return app


def start_web_server(broadcaster, store, engine, port: int = 8080, host: str = "0.0.0.0"):
    app = create_app(broadcaster, store, engine)

    def _run():
        app.run(host=host, port=port, debug=False, use_reloader=False, threaded=True)

    t = threading.Thread(target=_run, name="web-server", daemon=True)
    t.start()
    logger.info("Web server listening on %s:%d", host, port)
    return t
