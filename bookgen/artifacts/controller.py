import logging
import random
import time
from pathlib import PurePosixPath

from quart import Blueprint, abort, jsonify, request, send_file

from .service import get_signed_url, refresh_item_urls, refresh_order_urls
from ..common.config import settings
from ..common.db import utcnow
from ..common.errors import NotFoundError, ValidationError
from ..common.http import extension, int_arg, read_json, str_field

_logger = logging.getLogger(__name__)

bp = Blueprint("artifacts", __name__)

PDF_PREFIX = "pdfs"


def _pdf_key(filename: str) -> str:
    if not filename or "/" in filename or filename.startswith("."):
        raise ValidationError("Filename is required.")
    return f"{PDF_PREFIX}/{filename}"


def _size_label(size: int) -> str:
    return f"{size / 1024 / 1024:.2f}MB"


@bp.post("/generate-signed-url")
async def generate_signed_url():
    data = await read_json()
    key = str_field(data, "key", required=False) or str_field(data, "s3Key", required=False)
    if not key:
        raise ValidationError("key is required")
    ttl = int_arg(data.get("expiresIn"), "expiresIn", default=settings.SIGNED_URL_TTL)
    signed = get_signed_url(extension("artifact_store"), key, ttl)
    return jsonify({"success": True, "signedUrl": signed.url, "expiresIn": ttl, "expiresAt": signed.expires_at.isoformat()})


@bp.post("/refresh-order-urls")
async def refresh_urls():
    data = await read_json()
    store = extension("artifact_store")
    if data.get("orderItemId") is not None:
        item_id = int_arg(data.get("orderItemId"), "orderItemId")
        result = await refresh_item_urls(store, item_id)
        return jsonify({
            "success": True,
            "pdfUrl": result["pdfUrl"],
            "coverUrl": result["coverUrl"],
            "artifact_status": result["artifact_status"],
            "message": "Signed URLs refreshed successfully",
        })
    if data.get("orderId") is None:
        raise ValidationError("orderId or orderItemId is required")
    order_id = int_arg(data.get("orderId"), "orderId")
    results = await refresh_order_urls(store, order_id, force=bool(data.get("force", True)))
    return jsonify({"success": True, "order_id": order_id, "items": results,
                    "message": "Signed URLs refreshed successfully"})


@bp.get("/uploads/<path:key>")
async def serve_upload(key: str):
    store = extension("artifact_store")
    if not store.verify(key, request.args.get("expires"), request.args.get("signature")):
        abort(403)
    path = store.path_for(key)
    if not path.is_file():
        abort(404)
    return await send_file(path)


@bp.post("/api/upload-pdf")
async def upload_pdf():
    files = await request.files
    upload = files.get("pdf")
    if upload is None or not upload.filename:
        return jsonify({"success": False, "error": "No PDF file uploaded. Please select a PDF file.",
                        "code": "NO_FILE_UPLOADED"}), 400
    if upload.mimetype != "application/pdf":
        return jsonify({"success": False, "error": "Only PDF files are allowed.", "code": "INVALID_FILE_TYPE"}), 400
    if not upload.filename.lower().endswith(".pdf"):
        return jsonify({"success": False, "error": "File must have .pdf extension.",
                        "code": "INVALID_FILE_EXTENSION"}), 400
    data = upload.read()
    if len(data) > settings.MAX_PDF_SIZE:
        return jsonify({"success": False, "code": "FILE_TOO_LARGE",
                        "error": f"File size too large. Maximum allowed size is {settings.MAX_PDF_SIZE // (1024 * 1024)}MB."}), 400

    filename = f"{int(time.time() * 1000)}-{random.randint(0, 10**9)}{PurePosixPath(upload.filename).suffix.lower()}"
    store = extension("artifact_store")
    key = await store.put(_pdf_key(filename), data)
    signed = get_signed_url(store, key)
    _logger.info("PDF uploaded | original=%s filename=%s size=%s", upload.filename, filename, _size_label(len(data)))
    return jsonify({
        "success": True,
        "message": "PDF uploaded successfully",
        "data": {
            "pdf_url": signed.url,
            "pdf_key": key,
            "filename": filename,
            "originalName": upload.filename,
            "size": len(data),
            "sizeFormatted": _size_label(len(data)),
            "uploadedAt": utcnow().isoformat(),
        },
    })


@bp.get("/api/pdf-info/<filename>")
async def pdf_info(filename: str):
    stats = extension("artifact_store").stat(_pdf_key(filename))
    if stats is None:
        return jsonify({"success": True, "data": {"exists": False, "filename": filename}})
    return jsonify({
        "success": True,
        "data": {
            "exists": True,
            "filename": filename,
            "size": stats["size"],
            "sizeFormatted": _size_label(stats["size"]),
            "modifiedAt": stats["modified"],
        },
    })


@bp.delete("/api/pdf/<filename>")
async def pdf_delete(filename: str):
    if not extension("artifact_store").delete(_pdf_key(filename)):
        raise NotFoundError("PDF file not found.")
    return jsonify({"success": True, "message": "PDF file deleted successfully.", "filename": filename})


@bp.get("/api/health")
async def api_health():
    return jsonify({
        "success": True,
        "service": "PDF Upload Service",
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "endpoints": [
            "POST /api/upload-pdf - Upload PDF file",
            "GET /api/pdf-info/:filename - Get PDF information",
            "DELETE /api/pdf/:filename - Delete PDF file",
        ],
    })
