from agentic.backends.base import (
    MalformedResponseError,
    ModelBackend,
    ModelError,
    ModelTimeoutError,
    ModelUnreachableError,
)
from agentic.backends.gateway import ROLES, ModelGateway, ModelRoleBinding
from agentic.backends.hosted import HostedChatBackend
from agentic.backends.ollama import OllamaBackend

__all__ = [
    "HostedChatBackend",
    "MalformedResponseError",
    "ModelBackend",
    "ModelError",
    "ModelGateway",
    "ModelRoleBinding",
    "ModelTimeoutError",
    "ModelUnreachableError",
    "OllamaBackend",
    "ROLES",
]
