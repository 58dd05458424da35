from app.services.processors import background, documents, pdf, summarize, video
from app.services.processors.registry import PROCESSORS, get_processor

__all__ = ["PROCESSORS", "get_processor", "background", "documents", "pdf", "summarize", "video"]
