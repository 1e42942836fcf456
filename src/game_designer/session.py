"""
Session aggregate and the feature-review state machine.

A session moves through four phases, derived from ``current_feature_id`` and
``review_state``:

    NO_ACTIVE_FEATURE --nextFeature--> FEATURE_ASSIGNED
    FEATURE_ASSIGNED --featureReview--> REVIEW_PENDING
    REVIEW_PENDING --accepted--> NO_ACTIVE_FEATURE
    REVIEW_PENDING --questions--> AWAITING_ANSWERS
    REVIEW_PENDING --revise--> FEATURE_ASSIGNED
    AWAITING_ANSWERS --reviewReply--> REVIEW_PENDING

Every operation validates the phase before touching anything, and mutates the
session in place. Callers run operations against a working copy (see
``SessionStore.with_session``) so an oracle failure halfway through a
transition is discarded wholesale.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from pydantic import Field

from .errors import (
    FeatureAlreadyInProgress,
    InvalidStateTransition,
    InvalidToolArguments,
    OracleError,
    OracleProtocolError,
)
from .models import (
    ACTIVE_FEATURE_STATUSES,
    Accepted,
    Answer,
    AwaitingAgentAnswers,
    AwaitingOracleVerdict,
    ConversationLog,
    ConversationRole,
    ConversationTopic,
    DesignComplete,
    Feature,
    FeatureLedger,
    FeatureProposal,
    FeatureStatus,
    IdleReview,
    OracleRequest,
    Question,
    QuestionAnswer,
    Questions,
    RequestKind,
    ResolvedReview,
    ReviewLoopState,
    ReviewVerdict,
    Revise,
    SnapshotModel,
    Summary,
    utc_now,
)

logger = logging.getLogger(__name__)

_NUMBERED_ANSWER_RE = re.compile(r"^(?:Q|A|Answer[ \t]*)?(\d{1,3})[ \t]*[.):\]-][ \t]*", re.IGNORECASE | re.MULTILINE)


class SessionPhase(str, Enum):
    NO_ACTIVE_FEATURE = "NoActiveFeature"
    FEATURE_ASSIGNED = "FeatureAssigned"
    REVIEW_PENDING = "ReviewPending"
    AWAITING_ANSWERS = "AwaitingAnswers"


class Oracle(Protocol):
    """Anything that can answer a structured oracle request."""

    def request(self, session: "Session", request: OracleRequest, *, deadline: float) -> Any:
        ...


@dataclass
class ReviewOutcome:
    """Result of one review round, returned to the agent."""

    verdict: ReviewVerdict
    feature_id: int
    feature_title: str
    message: str = ""
    questions: list[str] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "featureId": self.feature_id,
            "featureTitle": self.feature_title,
            "message": self.message,
            "questions": list(self.questions),
        }


@dataclass
class FeatureAssignment:
    """Result of ``nextFeature``: either a new feature or a completion notice."""

    feature: Feature | None
    message: str = ""

    @property
    def design_complete(self) -> bool:
        return self.feature is None


class Session(SnapshotModel):
    """One game-design engagement: brief, ledger, conversation and review loop.

    ``current_feature_id`` points at the single active feature (in progress or
    awaiting review) and is ``None`` otherwise. It is set while ``review_state``
    is still ``IdleReview``, right after ``nextFeature``, and stays set through
    a ``ResolvedReview(revise)``. Only acceptance clears it. So a current
    feature does not imply a non-idle review state; ``phase`` combines both.
    """

    session_name: str = Field(frozen=True)
    game_description: str = Field(frozen=True)
    design_document: str | None = None
    conversation: ConversationLog = Field(default_factory=ConversationLog)
    features: FeatureLedger = Field(default_factory=FeatureLedger)
    review_state: ReviewLoopState = Field(default_factory=IdleReview)
    current_feature_id: int | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def new(cls, session_name: str, game_description: str) -> "Session":
        return cls(session_name=session_name, game_description=game_description.strip())

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    @property
    def phase(self) -> SessionPhase:
        if self.current_feature_id is None:
            return SessionPhase.NO_ACTIVE_FEATURE
        if isinstance(self.review_state, AwaitingOracleVerdict):
            return SessionPhase.REVIEW_PENDING
        if isinstance(self.review_state, AwaitingAgentAnswers):
            return SessionPhase.AWAITING_ANSWERS
        return SessionPhase.FEATURE_ASSIGNED

    @property
    def current_feature(self) -> Feature | None:
        if self.current_feature_id is None:
            return None
        return self.features.get(self.current_feature_id)

    @property
    def pending_questions(self) -> list[Question]:
        if isinstance(self.review_state, AwaitingAgentAnswers):
            return list(self.review_state.pending_questions)
        return []

    def check_invariants(self) -> None:
        """Raise ValueError if the ledger and review state disagree."""
        active = self.features.active()
        if len(active) > 1:
            raise ValueError(f"session '{self.session_name}' has {len(active)} active features")
        if self.current_feature_id is None:
            if active:
                raise ValueError(f"session '{self.session_name}' has an active feature but no current feature")
            if isinstance(self.review_state, (AwaitingOracleVerdict, AwaitingAgentAnswers)):
                raise ValueError(f"session '{self.session_name}' is reviewing without a current feature")
            return
        current = self.features.get(self.current_feature_id)
        if current.status not in ACTIVE_FEATURE_STATUSES:
            raise ValueError(
                f"current feature #{current.id} of session '{self.session_name}' is {current.status.value}"
            )

    # ------------------------------------------------------------------
    # State-independent operations
    # ------------------------------------------------------------------

    def overview(self) -> str:
        if not self.design_document:
            return self.game_description
        return f"{self.game_description}\n\n## Design document\n\n{self.design_document}"

    def expand_brief(self, oracle: Oracle, *, deadline: float) -> bool:
        """Ask the oracle to turn the brief into a design document.

        Oracle failures are logged and swallowed: the session keeps the brief alone.
        """
        request = OracleRequest(
            kind=RequestKind.SUMMARIZE,
            prompt=(
                "Create a comprehensive game design document for the game described above. "
                "Cover core concept, gameplay mechanics, story and setting, target audience, "
                "unique features, technical considerations and development milestones."
            ),
        )
        try:
            decision = _expect(oracle.request(self, request, deadline=deadline), Summary)
        except OracleError as exc:
            logger.warning(
                "Failed to get design document for session '%s': %s. Using original description.",
                self.session_name,
                exc,
            )
            return False
        self.design_document = decision.text.strip()
        self.conversation.append(ConversationRole.ORACLE, ConversationTopic.DESIGN, self.design_document)
        return True

    def ask(self, question: str, oracle: Oracle, *, deadline: float) -> str:
        """Forward an ad-hoc question; legal in every phase and never moves the state machine.

        Raises:
            InvalidToolArguments: If ``question`` is blank.
            OracleError: If the oracle round trip fails.
        """
        question = _require_text(question, "question")
        feature_id = self.current_feature_id
        self.conversation.append(ConversationRole.AGENT, ConversationTopic.ASK, question, feature_id=feature_id)
        scope = (
            f"The agent is working on feature #{feature_id}. " if feature_id is not None else ""
        )
        request = OracleRequest(
            kind=RequestKind.ANSWER_QUESTION,
            prompt=f"{scope}Answer the agent's latest question concisely and concretely.",
            feature_id=feature_id,
        )
        decision = _expect(oracle.request(self, request, deadline=deadline), Answer)
        answer = decision.text.strip()
        self.conversation.append(ConversationRole.ORACLE, ConversationTopic.ASK, answer, feature_id=feature_id)
        return answer

    # ------------------------------------------------------------------
    # Feature assignment
    # ------------------------------------------------------------------

    def next_feature(self, oracle: Oracle, *, deadline: float) -> FeatureAssignment:
        """Ask the oracle for the next feature and make it the current one.

        Args:
            oracle: Gateway (or test double) that proposes the feature.
            deadline: ``time.monotonic()`` value the oracle must answer by.

        Returns:
            The assigned feature, or a completion notice with ``feature=None``
            when the oracle reports the design is complete.

        Raises:
            FeatureAlreadyInProgress: If a feature is still active.
            OracleError: If the oracle round trip fails or the proposal is unusable.
        """
        phase = self.phase
        if phase != SessionPhase.NO_ACTIVE_FEATURE:
            current = self.current_feature
            raise FeatureAlreadyInProgress(
                f"Feature #{current.id} '{current.title}' is still in progress ({phase.value}); "
                "resolve its review before requesting the next feature."
            )

        done = self.features.with_status(FeatureStatus.DONE)
        completed = "\n".join(f"- #{feature.id} {feature.title}" for feature in done) or "- none yet"
        request = OracleRequest(
            kind=RequestKind.PROPOSE_FEATURE,
            prompt=(
                "Propose the single next feature the agent should implement. Keep it small and "
                "self-contained, building on what is already done.\n"
                f"Completed features:\n{completed}"
            ),
        )
        decision = _expect(oracle.request(self, request, deadline=deadline), FeatureProposal, DesignComplete)

        if isinstance(decision, DesignComplete):
            message = decision.message.strip() or "The game design is complete."
            self.conversation.append(ConversationRole.ORACLE, ConversationTopic.FEATURE, message)
            logger.info("Session '%s': oracle reports the design is complete", self.session_name)
            return FeatureAssignment(feature=None, message=message)

        if not decision.title.strip() or not decision.description.strip():
            raise OracleProtocolError("Oracle proposed a feature without a title or description")
        feature = self.features.add(decision.title, decision.description)
        feature.transition(FeatureStatus.IN_PROGRESS)
        self.current_feature_id = feature.id
        self.review_state = IdleReview()
        self.conversation.append(
            ConversationRole.ORACLE, ConversationTopic.FEATURE, feature.render(), feature_id=feature.id
        )
        logger.info("Session '%s': assigned feature #%d '%s'", self.session_name, feature.id, feature.title)
        return FeatureAssignment(feature=feature)

    # ------------------------------------------------------------------
    # Review loop
    # ------------------------------------------------------------------

    def submit_review(self, report: str, oracle: Oracle, *, deadline: float) -> ReviewOutcome:
        """Record the agent's change report and have the oracle judge it.

        Args:
            report: What the agent implemented for the current feature.
            oracle: Gateway that returns the verdict.
            deadline: ``time.monotonic()`` value the oracle must answer by.

        Returns:
            The verdict: accepted (feature done), questions (now awaiting
            answers) or revise (feature back in progress).

        Raises:
            InvalidStateTransition: Unless the phase is FeatureAssigned.
            InvalidToolArguments: If ``report`` is blank.
            OracleError: If the oracle round trip fails.
        """
        phase = self.phase
        if phase == SessionPhase.NO_ACTIVE_FEATURE:
            raise InvalidStateTransition("No feature is in progress; call nextFeature before featureReview.")
        if phase == SessionPhase.AWAITING_ANSWERS:
            raise InvalidStateTransition(
                "The designer is waiting for answers to its review questions; use reviewReply."
            )
        if phase == SessionPhase.REVIEW_PENDING:
            raise InvalidStateTransition("A review is already pending for the current feature.")
        report = _require_text(report, "changesMade")

        feature = self.current_feature
        feature.transition(FeatureStatus.AWAITING_REVIEW)
        feature.reports.append(report)
        feature.review_rounds += 1
        self.conversation.append(ConversationRole.AGENT, ConversationTopic.REVIEW, report, feature_id=feature.id)
        self.review_state = AwaitingOracleVerdict(report=report)
        logger.info("Session '%s': feature #%d submitted for review", self.session_name, feature.id)
        return self._judge(oracle, deadline=deadline)

    def reply_to_review(self, content: str, oracle: Oracle, *, deadline: float) -> ReviewOutcome:
        """Answer every pending review question, then have the oracle judge again.

        See ``split_answers`` for the accepted reply formats.

        Raises:
            InvalidStateTransition: If no questions are pending or the reply
                does not answer each of them exactly once.
            InvalidToolArguments: If ``content`` is blank.
            OracleError: If the oracle round trip fails.
        """
        if self.phase != SessionPhase.AWAITING_ANSWERS:
            raise InvalidStateTransition("There are no pending review questions to reply to.")
        content = _require_text(content, "content")
        review = self.review_state
        answers = split_answers(content, len(review.pending_questions))

        feature = self.current_feature
        self.conversation.append(ConversationRole.AGENT, ConversationTopic.REPLY, content, feature_id=feature.id)
        answered = review.answers + [
            QuestionAnswer(question=question.text, answer=answer)
            for question, answer in zip(review.pending_questions, answers)
        ]
        self.review_state = AwaitingOracleVerdict(report=review.report, answers=answered)
        return self._judge(oracle, deadline=deadline)

    def _judge(self, oracle: Oracle, *, deadline: float) -> ReviewOutcome:
        review = self.review_state
        feature = self.current_feature
        prompt = [
            f"Judge the implementation report for feature #{feature.id} '{feature.title}'.",
            f"Feature specification:\n{feature.description}",
            f"Implementation report:\n{review.report}",
        ]
        if review.answers:
            clarifications = "\n".join(f"Q: {item.question}\nA: {item.answer}" for item in review.answers)
            prompt.append(f"Clarifications from the agent:\n{clarifications}")
        prompt.append(
            "Accept it if it fulfils the specification, ask questions if something is unclear, "
            "or request a revision with concrete guidance."
        )
        request = OracleRequest(kind=RequestKind.JUDGE_REVIEW, prompt="\n\n".join(prompt), feature_id=feature.id)
        decision = _expect(oracle.request(self, request, deadline=deadline), Accepted, Questions, Revise)
        return self._apply_verdict(feature, review, decision)

    def _apply_verdict(
        self,
        feature: Feature,
        review: AwaitingOracleVerdict,
        decision: Accepted | Questions | Revise,
    ) -> ReviewOutcome:
        if isinstance(decision, Accepted):
            summary = decision.summary.strip() or f"Feature #{feature.id} accepted."
            feature.transition(FeatureStatus.DONE)
            self.conversation.append(ConversationRole.ORACLE, ConversationTopic.REVIEW, summary, feature_id=feature.id)
            self.review_state = ResolvedReview(verdict=ReviewVerdict.ACCEPTED, message=summary)
            self.current_feature_id = None
            logger.info("Session '%s': feature #%d accepted", self.session_name, feature.id)
            return ReviewOutcome(ReviewVerdict.ACCEPTED, feature.id, feature.title, message=summary)

        if isinstance(decision, Questions):
            texts = [text.strip() for text in decision.questions if text.strip()]
            if not texts:
                raise OracleProtocolError("Oracle returned a questions verdict without any questions")
            self.conversation.append(
                ConversationRole.ORACLE,
                ConversationTopic.REVIEW,
                "\n".join(f"{number}. {text}" for number, text in enumerate(texts, start=1)),
                feature_id=feature.id,
            )
            self.review_state = AwaitingAgentAnswers(
                report=review.report,
                pending_questions=[Question(number=n, text=text) for n, text in enumerate(texts, start=1)],
                answers=review.answers,
            )
            logger.info(
                "Session '%s': feature #%d review raised %d question(s)", self.session_name, feature.id, len(texts)
            )
            return ReviewOutcome(ReviewVerdict.QUESTIONS, feature.id, feature.title, questions=texts)

        guidance = decision.guidance.strip()
        if not guidance:
            raise OracleProtocolError("Oracle requested a revision without guidance")
        feature.transition(FeatureStatus.IN_PROGRESS)
        self.conversation.append(ConversationRole.ORACLE, ConversationTopic.REVIEW, guidance, feature_id=feature.id)
        self.review_state = ResolvedReview(verdict=ReviewVerdict.REVISE, message=guidance)
        logger.info("Session '%s': feature #%d needs revision", self.session_name, feature.id)
        return ReviewOutcome(ReviewVerdict.REVISE, feature.id, feature.title, message=guidance)


def split_answers(content: str, expected: int) -> list[str]:
    """Split a reply into exactly one answer per pending question.

    A single pending question takes the whole reply. Several questions need
    either a JSON array of exactly ``expected`` non-empty strings, or a
    numbered list whose top-level markers (``1.``, ``2)``, ``Q3:`` ...) start
    at the beginning of a line and run 1..expected, each once and in order.
    Indented lines, including nested numbered lists, belong to the answer
    above them.

    Args:
        content: The raw ``reviewReply`` text.
        expected: Number of pending questions.

    Returns:
        The answers, in question order.

    Raises:
        InvalidStateTransition: If the reply does not map one-to-one onto the questions.
    """
    text = content.strip()
    if expected <= 1:
        return [text]

    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            answers = [item.strip() if isinstance(item, str) else "" for item in parsed]
            if len(answers) != expected or not all(answers):
                raise _unmatched_reply(
                    expected, f"the JSON array must hold exactly {expected} non-empty strings, got {len(parsed)} item(s)"
                )
            return answers

    matches = list(_NUMBERED_ANSWER_RE.finditer(text))
    numbers = [int(match.group(1)) for match in matches]
    if numbers != list(range(1, expected + 1)):
        found = ", ".join(str(number) for number in numbers) or "none"
        raise _unmatched_reply(expected, f"found top-level answer numbers: {found}")
    if text[: matches[0].start()].strip():
        raise _unmatched_reply(expected, "text before answer 1 would not be attributed to any question")

    answers = []
    for index, match in enumerate(matches):
        end = matches[index + 1].start() if index + 1 < len(matches) else len(text)
        body = text[match.end():end].strip()
        if not body:
            raise _unmatched_reply(expected, f"answer {index + 1} is empty")
        answers.append(body)
    return answers


def _unmatched_reply(expected: int, detail: str) -> InvalidStateTransition:
    return InvalidStateTransition(
        f"reviewReply must answer all {expected} pending questions at once; {detail}. "
        "Reply with a numbered list (1., 2., ...) or a JSON array of strings."
    )


def _require_text(value: str, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidToolArguments(f"{name} must be a non-empty string")
    return value.strip()


def _expect(decision: Any, *expected: type) -> Any:
    if not isinstance(decision, expected):
        names = ", ".join(kind.__name__ for kind in expected)
        raise OracleProtocolError(f"Oracle returned {type(decision).__name__}; expected one of: {names}")
    return decision
