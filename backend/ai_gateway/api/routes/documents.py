"""Document extraction endpoint."""

import logging
from typing import Annotated

from fastapi import APIRouter, File, Form, UploadFile

from ai_gateway.api.dependencies import CallerId, Gateway
from ai_gateway.api.exceptions import FileTooLargeError, ValidationError
from ai_gateway.api.response import success_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/documents", tags=["Documents"])

MAX_DOCUMENT_SIZE = 20 * 1024 * 1024  # 20MB
DEFAULT_PIPELINE = "process-document"


@router.post("/extract")
async def extract_document(
    caller_id: CallerId,
    gateway: Gateway,
    file: Annotated[UploadFile, File(...)],
    pipeline: Annotated[str, Form(min_length=1, max_length=100)] = DEFAULT_PIPELINE,
    force_reprocess: Annotated[bool, Form()] = False,
) -> dict:
    """Extract structured fields from an uploaded PDF or image.

    Repeat uploads of the same document by the same caller are answered
    from cache unless ``force_reprocess`` is set.
    """
    content = await file.read()
    if not content:
        raise ValidationError("Uploaded file is empty")
    if len(content) > MAX_DOCUMENT_SIZE:
        raise FileTooLargeError(len(content), MAX_DOCUMENT_SIZE)

    result = await gateway.extract_document(
        content,
        file.content_type,
        caller_id=caller_id,
        pipeline_name=pipeline,
        force_reprocess=force_reprocess,
    )
    return success_response(result.model_dump(mode="json"))
