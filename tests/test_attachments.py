from mentor.core import attachments
from mentor.core.attachments import Attachment, prepare_attachment


def test_no_attachment():
    prepared = prepare_attachment(None)
    assert prepared.context == ""
    assert prepared.image_part is None


def test_pdf_text_becomes_context(monkeypatch):
    monkeypatch.setattr(attachments, "extract_pdf_text", lambda data: "Page one text")
    prepared = prepare_attachment(Attachment("a.pdf", "application/pdf", b"%PDF-1.4"))
    assert prepared.context == "Contents of the attached PDF:\nPage one text\n\n"


def test_unreadable_pdf_becomes_note():
    prepared = prepare_attachment(Attachment("a.pdf", "application/pdf", b"not a pdf"))
    assert prepared.context == "Received a PDF attachment but could not read it.\n\n"
    assert prepared.image_part is None


def test_image_is_inlined():
    prepared = prepare_attachment(Attachment("a.jpg", "image/jpeg; charset=binary", b"\xff\xd8"))
    assert prepared.image_part == {"type": "image_url", "image_url": {"url": "data:image/jpeg;base64,/9g="}}


def test_oversized_upload(monkeypatch):
    monkeypatch.setattr(attachments, "MAX_ATTACHMENT_BYTES", 4)
    prepared = prepare_attachment(Attachment("big.png", "image/png", b"12345"))
    assert prepared.context.startswith("Received an attachment that is too large")
    assert prepared.image_part is None
