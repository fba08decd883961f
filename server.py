from flask import Flask, request, jsonify, send_from_directory
import os
from flask_cors import CORS

from kamon_clients import ChainTokenReader, UpstreamError, make_points_source
from sync_runtime import LoopThread, MongoOutcomeLog, build_hub, get_db, COLL_OUTCOMES

# ---- config ----
PORT = int(os.getenv("PORT", "5000"))
OUTCOME_LIMIT_MAX = 100


# ---- app ----
app = Flask(__name__, static_folder="public", static_url_path="")
# Allow common dev origins; no cookies are used
CORS(
    app,
    resources={r"/api/*": {"origins": [
        "http://127.0.0.1:5000",
        "http://localhost:5000",
        # Allow any ngrok preview:
        "https://*.ngrok-free.app",
    ]}},
)

# ---- sync runtime ----
# MongoClient connects lazily, so building these does not touch the network
db = get_db()
outcome_log = MongoOutcomeLog(db[COLL_OUTCOMES])
hub = build_hub(outcome_log)
reader = ChainTokenReader()
points_source = make_points_source()
runner = LoopThread()


def _address_arg():
    return (request.args.get("address") or "").strip()


# ---------- API ----------
@app.get("/api/compare_points")
def compare_points():
    address = _address_arg()
    if not address:
        return jsonify({"error": "Address is required"}), 400

    try:
        offchain = points_source.get_points(address)
        snap = reader.read_token(address)
    except UpstreamError as e:
        return jsonify({"error": str(e)}), 502

    onchain = {
        "token_id": snap.token_id,
        "token_uri": snap.token_uri,
        "points": snap.token.points() if snap.token else None,
    }
    diffs = {}
    if snap.token is not None and str(offchain) != str(onchain["points"]):
        diffs["Points"] = {"off_chain": offchain, "on_chain": onchain["points"]}

    return jsonify({"address": address, "offchain": {"points": offchain}, "onchain": onchain, "diffs": diffs})


@app.post("/api/quest_completed")
def quest_completed():
    body = request.get_json(silent=True) or {}
    address = str(body.get("address") or "").strip()
    if not address:
        return jsonify({"error": "Address is required"}), 400

    # the hub schedules the cycle on its own loop and answers right away
    accepted = runner.call(hub.quest_completed, address)
    return jsonify({"address": address, "accepted": bool(accepted)}), 202


@app.get("/api/sync_status")
def sync_status():
    address = _address_arg()
    if not address:
        return jsonify({"error": "Address is required"}), 400
    return jsonify(runner.call(hub.snapshot, address))


@app.get("/api/outcomes")
def outcomes():
    address = _address_arg() or None
    try:
        limit = min(max(int(request.args.get("limit", 20)), 1), OUTCOME_LIMIT_MAX)
    except ValueError:
        return jsonify({"error": "limit must be an integer"}), 400
    return jsonify({"address": address, "outcomes": outcome_log.recent(address, limit)})


# ---------- frontend ----------
# Flask serves /public as static root; / returns its index.html
@app.get("/")
def root():
    return send_from_directory("public", "index.html")


if __name__ == "__main__":
    print("Serving static from:", os.path.abspath("public"))
    outcome_log.ensure_indexes()
    runner.start()
    print("🚀 Kamon point sync API")
    app.run(host="0.0.0.0", port=PORT, debug=False)
