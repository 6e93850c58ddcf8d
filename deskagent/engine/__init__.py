"""deskagent engine: worker supervision, wire codec and conversation state."""
from .models import (
    QueryRecord,
    QueryState,
    WorkerLog,
    WorkerLogSource,
)
from .config import SessionConfig
from .errors import (
    Busy,
    DeskAgentError,
    MalformedFrame,
    PersistenceError,
    QueryError,
    StartupTimeout,
    ToolExecutionError,
    ValidationError,
    WorkerCrashed,
    WorkerNotRunning,
)

__all__ = [
    # Supervisor and reducer (lazy import to avoid circular deps)
    "SessionSupervisor",
    "ConversationReducer",
    # Models
    "QueryRecord",
    "QueryState",
    "WorkerLog",
    "WorkerLogSource",
    # Config
    "SessionConfig",
    # YAML config (lazy import)
    "load_yaml_config",
    # Capabilities and agents (lazy import)
    "Capability",
    "CapabilityRegistry",
    "load_capabilities",
    "AgentDefinition",
    "AgentCatalog",
    "load_agent_catalog",
    # Errors
    "Busy",
    "DeskAgentError",
    "MalformedFrame",
    "PersistenceError",
    "QueryError",
    "StartupTimeout",
    "ToolExecutionError",
    "ValidationError",
    "WorkerCrashed",
    "WorkerNotRunning",
]


def __getattr__(name: str):
    if name == "SessionSupervisor":
        from .supervisor import SessionSupervisor
        return SessionSupervisor
    if name == "ConversationReducer":
        from .reducer import ConversationReducer
        return ConversationReducer
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "Capability":
        from .capabilities import Capability
        return Capability
    if name == "CapabilityRegistry":
        from .capabilities import CapabilityRegistry
        return CapabilityRegistry
    if name == "load_capabilities":
        from .capabilities import load_capabilities
        return load_capabilities
    if name == "AgentDefinition":
        from .agent_definitions import AgentDefinition
        return AgentDefinition
    if name == "AgentCatalog":
        from .agent_definitions import AgentCatalog
        return AgentCatalog
    if name == "load_agent_catalog":
        from .agent_definitions import load_agent_catalog
        return load_agent_catalog
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
