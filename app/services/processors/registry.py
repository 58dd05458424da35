from collections.abc import Callable

from app.models.enums import ToolType
from app.services.processors.base import Processor
from app.services.processors.errors import PermanentJobError

PROCESSORS: dict[ToolType, Processor] = {}


def register(tool_type: ToolType) -> Callable[[Processor], Processor]:
    def decorator(func: Processor) -> Processor:
        PROCESSORS[tool_type] = func
        return func

    return decorator


def get_processor(tool_type: ToolType) -> Processor:
    try:
        return PROCESSORS[tool_type]
    except KeyError as exc:
        raise PermanentJobError(f"No processor registered for {tool_type.name}") from exc
