from importlib.metadata import PackageNotFoundError, version

from .canonical import payload_checksum, to_canonical_json
from .errors import (
    DesignerError,
    FeatureAlreadyInProgress,
    InvalidStateTransition,
    InvalidToolArguments,
    OracleError,
    OracleProtocolError,
    OracleTimeout,
    OracleUnreachable,
    PersistenceError,
    SessionAlreadyExists,
    SessionNotFound,
)
from .models import (
    Accepted,
    Answer,
    ConversationEntry,
    ConversationLog,
    ConversationRole,
    ConversationTopic,
    DesignComplete,
    Feature,
    FeatureLedger,
    FeatureProposal,
    FeatureStatus,
    OracleRequest,
    Questions,
    RequestKind,
    ReviewVerdict,
    Revise,
    Summary,
)
from .oracle import OracleGateway
from .session import FeatureAssignment, ReviewOutcome, Session, SessionPhase
from .settings import DesignerSettings
from .state_store import SessionStore
from .tools import GameDesignTools


def get_version() -> str:
    try:
        return version("game-designer-mcp")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "Accepted",
    "Answer",
    "ConversationEntry",
    "ConversationLog",
    "ConversationRole",
    "ConversationTopic",
    "DesignComplete",
    "DesignerError",
    "DesignerSettings",
    "Feature",
    "FeatureAlreadyInProgress",
    "FeatureAssignment",
    "FeatureLedger",
    "FeatureProposal",
    "FeatureStatus",
    "GameDesignTools",
    "InvalidStateTransition",
    "InvalidToolArguments",
    "OracleError",
    "OracleGateway",
    "OracleProtocolError",
    "OracleRequest",
    "OracleTimeout",
    "OracleUnreachable",
    "PersistenceError",
    "Questions",
    "RequestKind",
    "ReviewOutcome",
    "ReviewVerdict",
    "Revise",
    "Session",
    "SessionAlreadyExists",
    "SessionNotFound",
    "SessionPhase",
    "SessionStore",
    "Summary",
    "get_version",
    "payload_checksum",
    "to_canonical_json",
]
