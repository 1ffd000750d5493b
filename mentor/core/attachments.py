# mentor/core/attachments.py
#
# Uploaded file -> model input. PDFs become a text prefix for the user
# message, images are inlined as a base64 data URL, anything else becomes a
# short note so the model knows something was attached.

from __future__ import annotations

import base64
import io
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pypdf import PdfReader

from mentor.utils.logging import get_logger

logger = get_logger(__name__)

PDF_MIME = "application/pdf"

# Hard cap on an uploaded file (bytes)
MAX_ATTACHMENT_BYTES = 20 * 1024 * 1024


@dataclass
class Attachment:
    filename: str
    content_type: str
    data: bytes


@dataclass
class PreparedAttachment:
    context: str = ""                              # prefixed to the user text
    image_part: Optional[Dict[str, Any]] = None    # extra content part for the user turn


def extract_pdf_text(data: bytes) -> str:
    reader = PdfReader(io.BytesIO(data))
    pages = [(page.extract_text() or "").strip() for page in reader.pages]
    return "\n".join(p for p in pages if p)


def image_content_part(mime: str, data: bytes) -> Dict[str, Any]:
    b64 = base64.b64encode(data).decode("ascii")
    return {"type": "image_url", "image_url": {"url": f"data:{mime};base64,{b64}"}}


def prepare_attachment(attachment: Optional[Attachment]) -> PreparedAttachment:
    if attachment is None or not attachment.data:
        return PreparedAttachment()

    mime = (attachment.content_type or "").split(";")[0].strip().lower()
    size = len(attachment.data)

    if size > MAX_ATTACHMENT_BYTES:
        logger.warning("[attachment] too large name=%s bytes=%d", attachment.filename, size)
        return PreparedAttachment(context=f"Received an attachment that is too large to read ({size} bytes).\n\n")

    if mime == PDF_MIME:
        try:
            text = extract_pdf_text(attachment.data)
        except Exception as exc:
            logger.warning("[attachment] pdf parse failed name=%s err=%s", attachment.filename, exc)
            return PreparedAttachment(context="Received a PDF attachment but could not read it.\n\n")
        logger.info("[attachment] pdf name=%s bytes=%d text_chars=%d", attachment.filename, size, len(text))
        return PreparedAttachment(context=f"Contents of the attached PDF:\n{text}\n\n")

    if mime.startswith("image/"):
        logger.info("[attachment] image name=%s mime=%s bytes=%d", attachment.filename, mime, size)
        return PreparedAttachment(image_part=image_content_part(mime, attachment.data))

    logger.warning("[attachment] unsupported mime=%r name=%s", mime, attachment.filename)
    return PreparedAttachment(context=f"Received an unsupported attachment ({mime or 'unknown type'}).\n\n")
