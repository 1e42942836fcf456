from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from .errors import InvalidToolArguments
from .models import ReviewVerdict
from .session import FeatureAssignment, Oracle, ReviewOutcome, Session
from .state_store import SessionStore, validate_session_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    arguments: tuple[str, ...]


TOOL_SPECS: tuple[ToolSpec, ...] = (
    ToolSpec(
        "designNew",
        "Create a new game design session with a provided description.",
        ("sessionName", "gameDescription"),
    ),
    ToolSpec("designOverview", "Get the initial game design goals for a session.", ("sessionName",)),
    ToolSpec("nextFeature", "Get the detailed specification for the next feature to implement.", ("sessionName",)),
    ToolSpec(
        "featureReview",
        "Submit a comprehensive report of changes made for review by the designer.",
        ("sessionName", "changesMade"),
    ),
    ToolSpec(
        "reviewReply",
        "Reply to questions raised by the designer during a feature review. When several questions "
        "are pending, answer all of them as a numbered list.",
        ("sessionName", "content"),
    ),
    ToolSpec("featureAsk", "Ask an ad-hoc question about the current feature or design.", ("sessionName", "question")),
)

TOOL_NAMES: frozenset[str] = frozenset(spec.name for spec in TOOL_SPECS)


class GameDesignTools:
    """Maps each tool call onto one session store operation and renders the reply text."""

    def __init__(
        self,
        store: SessionStore,
        oracle: Oracle,
        *,
        oracle_timeout_seconds: float = 120.0,
        expand_brief: bool = True,
    ) -> None:
        self.store = store
        self.oracle = oracle
        self.oracle_timeout_seconds = oracle_timeout_seconds
        self.expand_brief = expand_brief

    def _deadline(self) -> float:
        return time.monotonic() + self.oracle_timeout_seconds

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    def design_new(self, session_name: str, game_description: str) -> str:
        """Create a session and, when enabled, ask the oracle to expand the brief.

        Returns:
            Confirmation text; it mentions the design document when one was written.

        Raises:
            InvalidToolArguments: If the name or description is unusable.
            SessionAlreadyExists: If the name is taken.
            PersistenceError: If the snapshot cannot be written.
        """
        validate_session_name(session_name)
        description = _require_argument(game_description, "gameDescription")

        def build() -> Session:
            session = Session.new(session_name, description)
            if self.expand_brief:
                session.expand_brief(self.oracle, deadline=self._deadline())
            return session

        session = self.store.create(session_name, build)
        if session.design_document:
            return f"Session '{session_name}' created successfully with comprehensive game design."
        return f"Session '{session_name}' created successfully."

    def design_overview(self, session_name: str) -> str:
        return self.store.read(session_name).overview()

    def next_feature(self, session_name: str) -> str:
        assignment: FeatureAssignment = self.store.with_session(
            session_name, lambda session: session.next_feature(self.oracle, deadline=self._deadline())
        )
        if assignment.design_complete:
            return f"DESIGN COMPLETE: {assignment.message}"
        return assignment.feature.render()

    def feature_review(self, session_name: str, changes_made: str) -> str:
        report = _require_argument(changes_made, "changesMade")
        outcome: ReviewOutcome = self.store.with_session(
            session_name, lambda session: session.submit_review(report, self.oracle, deadline=self._deadline())
        )
        return render_outcome(outcome)

    def review_reply(self, session_name: str, content: str) -> str:
        reply = _require_argument(content, "content")
        outcome: ReviewOutcome = self.store.with_session(
            session_name, lambda session: session.reply_to_review(reply, self.oracle, deadline=self._deadline())
        )
        return render_outcome(outcome)

    def feature_ask(self, session_name: str, question: str) -> str:
        text = _require_argument(question, "question")
        return self.store.with_session(
            session_name, lambda session: session.ask(text, self.oracle, deadline=self._deadline())
        )

    # ------------------------------------------------------------------
    # Dispatch by tool name
    # ------------------------------------------------------------------

    def call(self, tool_name: str, arguments: dict[str, Any]) -> str:
        """Dispatch a parsed tool call.

        Raises:
            InvalidToolArguments: If the tool is unknown or a required argument is missing.
        """
        handlers: dict[str, Callable[..., str]] = {
            "designNew": self.design_new,
            "designOverview": self.design_overview,
            "nextFeature": self.next_feature,
            "featureReview": self.feature_review,
            "reviewReply": self.review_reply,
            "featureAsk": self.feature_ask,
        }
        spec = next((item for item in TOOL_SPECS if item.name == tool_name), None)
        if spec is None:
            raise InvalidToolArguments(f"Tool '{tool_name}' not found.")
        values = []
        for argument in spec.arguments:
            value = arguments.get(argument)
            if value is None:
                raise InvalidToolArguments(f"{argument} is required for {tool_name}")
            values.append(value)
        logger.debug("Dispatching %s for session %r", tool_name, arguments.get("sessionName"))
        return handlers[tool_name](*values)


def render_outcome(outcome: ReviewOutcome) -> str:
    if outcome.verdict == ReviewVerdict.ACCEPTED:
        return (
            f"ACCEPTED: feature #{outcome.feature_id} '{outcome.feature_title}' is done.\n\n"
            f"{outcome.message}\n\nCall nextFeature for the next task."
        )
    if outcome.verdict == ReviewVerdict.QUESTIONS:
        numbered = "\n".join(f"{number}. {text}" for number, text in enumerate(outcome.questions, start=1))
        hint = (
            "Answer with reviewReply."
            if len(outcome.questions) == 1
            else "Answer all of them in one reviewReply, as a numbered list."
        )
        return f"QUESTIONS about feature #{outcome.feature_id} '{outcome.feature_title}':\n{numbered}\n\n{hint}"
    return (
        f"REVISE feature #{outcome.feature_id} '{outcome.feature_title}':\n\n{outcome.message}\n\n"
        "Apply the guidance and submit a new featureReview."
    )


def _require_argument(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidToolArguments(f"{name} must be a non-empty string")
    return value
