from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(UTC)


class SnapshotModel(BaseModel):
    """Base for every model persisted in a session snapshot.

    Unknown fields written by newer versions are ignored on load.
    """

    model_config = ConfigDict(extra="ignore")


# ---------------------------------------------------------------------------
# Feature ledger
# ---------------------------------------------------------------------------

class FeatureStatus(str, Enum):
    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    AWAITING_REVIEW = "awaiting_review"
    DONE = "done"


FEATURE_STATUS_TRANSITIONS: dict[FeatureStatus, frozenset[FeatureStatus]] = {
    FeatureStatus.PLANNED: frozenset({FeatureStatus.IN_PROGRESS}),
    FeatureStatus.IN_PROGRESS: frozenset({FeatureStatus.AWAITING_REVIEW}),
    FeatureStatus.AWAITING_REVIEW: frozenset({FeatureStatus.IN_PROGRESS, FeatureStatus.DONE}),
    FeatureStatus.DONE: frozenset(),
}

ACTIVE_FEATURE_STATUSES: frozenset[FeatureStatus] = frozenset(
    {FeatureStatus.IN_PROGRESS, FeatureStatus.AWAITING_REVIEW}
)


class Feature(SnapshotModel):
    """One bounded implementation task proposed by the oracle."""

    id: int = Field(ge=1, frozen=True)
    title: str
    description: str
    status: FeatureStatus = FeatureStatus.PLANNED
    reports: list[str] = Field(default_factory=list)
    review_rounds: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None

    def transition(self, new_status: FeatureStatus, *, at: datetime | None = None) -> None:
        """Move the feature to ``new_status``.

        Raises:
            ValueError: If the transition is not allowed by the status table.
        """
        allowed = FEATURE_STATUS_TRANSITIONS[self.status]
        if new_status not in allowed:
            raise ValueError(
                f"Illegal feature status transition for feature #{self.id}: "
                f"{self.status.value} -> {new_status.value}"
            )
        self.status = new_status
        if new_status == FeatureStatus.DONE:
            self.completed_at = at or utc_now()

    def render(self) -> str:
        return f"Feature #{self.id}: {self.title}\n\n{self.description}"


class FeatureLedger(SnapshotModel):
    """Append-only, ordered record of features."""

    features: list[Feature] = Field(default_factory=list)
    next_id: int = 1

    def add(self, title: str, description: str) -> Feature:
        feature = Feature(id=self.next_id, title=title.strip(), description=description.strip())
        self.features.append(feature)
        self.next_id += 1
        return feature

    def get(self, feature_id: int) -> Feature:
        for feature in self.features:
            if feature.id == feature_id:
                return feature
        raise KeyError(f"feature #{feature_id} is not in the ledger")

    def active(self) -> list[Feature]:
        return [feature for feature in self.features if feature.status in ACTIVE_FEATURE_STATUSES]

    def with_status(self, status: FeatureStatus) -> list[Feature]:
        return [feature for feature in self.features if feature.status == status]

    def __len__(self) -> int:
        return len(self.features)


# ---------------------------------------------------------------------------
# Conversation log
# ---------------------------------------------------------------------------

class ConversationRole(str, Enum):
    AGENT = "agent"
    ORACLE = "oracle"
    SYSTEM = "system"


class ConversationTopic(str, Enum):
    DESIGN = "design"
    FEATURE = "feature"
    REVIEW = "review"
    REPLY = "reply"
    ASK = "ask"


class ConversationEntry(SnapshotModel):
    sequence: int = Field(ge=1)
    role: ConversationRole
    topic: ConversationTopic
    content: str
    feature_id: int | None = None
    timestamp: datetime = Field(default_factory=utc_now)


class ConversationLog(SnapshotModel):
    """Append-only exchange history; insertion order is the only ordering key."""

    entries: list[ConversationEntry] = Field(default_factory=list)

    def append(
        self,
        role: ConversationRole,
        topic: ConversationTopic,
        content: str,
        *,
        feature_id: int | None = None,
    ) -> ConversationEntry:
        sequence = self.entries[-1].sequence + 1 if self.entries else 1
        entry = ConversationEntry(
            sequence=sequence,
            role=role,
            topic=topic,
            content=content,
            feature_id=feature_id,
        )
        self.entries.append(entry)
        return entry

    def window(self, limit: int = 0) -> list[ConversationEntry]:
        """Return the most recent ``limit`` entries, or all of them when ``limit`` is 0."""
        if limit <= 0:
            return list(self.entries)
        return list(self.entries[-limit:])

    def __len__(self) -> int:
        return len(self.entries)


# ---------------------------------------------------------------------------
# Review loop state
# ---------------------------------------------------------------------------

class ReviewVerdict(str, Enum):
    ACCEPTED = "accepted"
    QUESTIONS = "questions"
    REVISE = "revise"


class Question(SnapshotModel):
    number: int = Field(ge=1)
    text: str


class QuestionAnswer(SnapshotModel):
    question: str
    answer: str


class IdleReview(SnapshotModel):
    state: Literal["idle"] = "idle"


class AwaitingOracleVerdict(SnapshotModel):
    state: Literal["awaiting_oracle_verdict"] = "awaiting_oracle_verdict"
    report: str
    answers: list[QuestionAnswer] = Field(default_factory=list)


class AwaitingAgentAnswers(SnapshotModel):
    state: Literal["awaiting_agent_answers"] = "awaiting_agent_answers"
    report: str
    pending_questions: list[Question] = Field(min_length=1)
    answers: list[QuestionAnswer] = Field(default_factory=list)


class ResolvedReview(SnapshotModel):
    state: Literal["resolved"] = "resolved"
    verdict: ReviewVerdict
    message: str


ReviewLoopState = Annotated[
    Union[IdleReview, AwaitingOracleVerdict, AwaitingAgentAnswers, ResolvedReview],
    Field(discriminator="state"),
]


# ---------------------------------------------------------------------------
# Oracle requests and decisions
# ---------------------------------------------------------------------------

class RequestKind(str, Enum):
    PROPOSE_FEATURE = "propose_feature"
    JUDGE_REVIEW = "judge_review"
    ANSWER_QUESTION = "answer_question"
    SUMMARIZE = "summarize"


@dataclass(frozen=True)
class OracleRequest:
    """Structured request built by a session for one oracle round trip."""

    kind: RequestKind
    prompt: str
    feature_id: int | None = None


class FeatureProposal(BaseModel):
    kind: Literal["feature"] = "feature"
    title: str
    description: str


class DesignComplete(BaseModel):
    kind: Literal["design_complete"] = "design_complete"
    message: str


class Accepted(BaseModel):
    kind: Literal["accepted"] = "accepted"
    summary: str


class Questions(BaseModel):
    kind: Literal["questions"] = "questions"
    questions: list[str] = Field(min_length=1)


class Revise(BaseModel):
    kind: Literal["revise"] = "revise"
    guidance: str


class Answer(BaseModel):
    kind: Literal["answer"] = "answer"
    text: str


class Summary(BaseModel):
    kind: Literal["summary"] = "summary"
    text: str


Decision = Annotated[
    Union[FeatureProposal, DesignComplete, Accepted, Questions, Revise, Answer, Summary],
    Field(discriminator="kind"),
]

ReviewDecision = Union[Accepted, Questions, Revise]

DECISIONS_BY_REQUEST: dict[RequestKind, tuple[type[BaseModel], ...]] = {
    RequestKind.PROPOSE_FEATURE: (FeatureProposal, DesignComplete),
    RequestKind.JUDGE_REVIEW: (Accepted, Questions, Revise),
    RequestKind.ANSWER_QUESTION: (Answer,),
    RequestKind.SUMMARIZE: (Summary,),
}
