from quart import Blueprint, jsonify

from ..common.http import extension

bp = Blueprint("monitor", __name__, url_prefix="/monitor")


@bp.post("/start")
async def monitor_start():
    monitor = extension("order_monitor")
    if not await monitor.start():
        return jsonify({"message": "Order monitor is already running", "status": monitor.status()})
    return jsonify({"message": "Order monitor started successfully", "status": monitor.status()})


@bp.post("/stop")
async def monitor_stop():
    monitor = extension("order_monitor")
    if not await monitor.stop():
        return jsonify({"message": "Order monitor is not running", "status": monitor.status()})
    return jsonify({"message": "Order monitor stopped successfully", "status": monitor.status()})


@bp.get("/status")
async def monitor_status():
    return jsonify(extension("order_monitor").status())
