"""Document (PDF / image) text extraction and structuring."""

from .images import DocumentKind, detect_document_kind, normalize_for_ocr
from .ocr import OCRChain, OCRResult, validate_ocr_result
from .pdf import PDFPage, PDFProcessingResult, PDFProcessor
from .pipeline import DocumentExtractionPipeline, PipelineStage, StructuredResult

__all__ = [
    "DocumentKind",
    "detect_document_kind",
    "normalize_for_ocr",
    "OCRChain",
    "OCRResult",
    "validate_ocr_result",
    "PDFPage",
    "PDFProcessingResult",
    "PDFProcessor",
    "DocumentExtractionPipeline",
    "PipelineStage",
    "StructuredResult",
]
