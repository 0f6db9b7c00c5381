"""Shared models, schema translation, configuration and logging."""

from shared.models import (
    AgentResult,
    RegisteredTool,
    SessionState,
    StepRecord,
    ToolDescriptor,
    TransportType,
)
from shared.schema import build_input_model, translate_schema, validate_arguments
from shared.config import Settings, get_settings
from shared.logging import get_logger, setup_logging

__all__ = [
    "AgentResult",
    "RegisteredTool",
    "SessionState",
    "StepRecord",
    "ToolDescriptor",
    "TransportType",
    "build_input_model",
    "translate_schema",
    "validate_arguments",
    "Settings",
    "get_settings",
    "get_logger",
    "setup_logging",
]
