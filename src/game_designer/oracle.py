"""
Oracle gateway: the only component that talks to the design oracle.

Each request kind is bound to its own output schema. The raw schema instance
coming back from the model is normalized into the closed ``Decision`` union;
anything that does not fit is an ``OracleProtocolError``. Transport failures
are mapped onto ``OracleTimeout`` and ``OracleUnreachable``. Nothing here
mutates the session.
"""

from __future__ import annotations

import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import TYPE_CHECKING, Literal, Mapping

import openai
from langchain_core.exceptions import OutputParserException
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from pydantic import BaseModel, Field

from .errors import OracleProtocolError, OracleTimeout, OracleUnreachable
from .llm import StructuredOutputError, SupportsInvoke, get_structured_chat_model
from .models import (
    DECISIONS_BY_REQUEST,
    Accepted,
    Answer,
    ConversationEntry,
    ConversationRole,
    DesignComplete,
    FeatureProposal,
    OracleRequest,
    Questions,
    RequestKind,
    Revise,
    Summary,
)
from .settings import DesignerSettings

if TYPE_CHECKING:
    from .session import Session

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Output schemas (what the model is asked to return)
# ---------------------------------------------------------------------------

class FeatureProposalOutput(BaseModel):
    """Reply to a propose-feature request."""

    design_complete: bool = Field(default=False, description="True only when no feature is left to build")
    title: str = Field(default="", description="Short feature title")
    description: str = Field(default="", description="Detailed, self-contained feature specification")
    message: str = Field(default="", description="Closing note when design_complete is true")


class ReviewJudgementOutput(BaseModel):
    """Reply to a judge-review request."""

    verdict: Literal["accepted", "questions", "revise"]
    summary: str = Field(default="", description="Why the implementation is accepted")
    questions: list[str] = Field(default_factory=list, description="Questions for the agent")
    guidance: str = Field(default="", description="What must change before resubmitting")


class AnswerOutput(BaseModel):
    """Reply to an ad-hoc question."""

    answer: str


class DesignDocumentOutput(BaseModel):
    """Reply to a summarize request."""

    document: str


OUTPUT_SCHEMAS: dict[RequestKind, type[BaseModel]] = {
    RequestKind.PROPOSE_FEATURE: FeatureProposalOutput,
    RequestKind.JUDGE_REVIEW: ReviewJudgementOutput,
    RequestKind.ANSWER_QUESTION: AnswerOutput,
    RequestKind.SUMMARIZE: DesignDocumentOutput,
}

_ROLE_BRIEFS: dict[RequestKind, str] = {
    RequestKind.PROPOSE_FEATURE: (
        "You plan the game one feature at a time. Never reveal the whole plan; hand out exactly one "
        "bounded feature that a coding agent can implement and report on."
    ),
    RequestKind.JUDGE_REVIEW: (
        "You review the coding agent's implementation report against the feature specification. "
        "Use verdict 'accepted', 'questions' (with a non-empty list of questions) or 'revise' "
        "(with concrete guidance)."
    ),
    RequestKind.ANSWER_QUESTION: (
        "You answer the coding agent's questions about the current feature or the design without "
        "revealing features that have not been assigned yet."
    ),
    RequestKind.SUMMARIZE: (
        "You write detailed but concise game design documents from brief descriptions."
    ),
}


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def to_decision(kind: RequestKind, output: BaseModel) -> BaseModel:
    """Map a validated output schema instance onto the decision union.

    Raises:
        OracleProtocolError: If the output does not describe a legal decision for ``kind``.
    """
    expected_schema = OUTPUT_SCHEMAS[kind]
    if not isinstance(output, expected_schema):
        raise OracleProtocolError(
            f"{kind.value} returned {type(output).__name__}, expected {expected_schema.__name__}"
        )

    if isinstance(output, FeatureProposalOutput):
        if output.design_complete:
            return DesignComplete(message=output.message.strip())
        if not output.title.strip() or not output.description.strip():
            raise OracleProtocolError("Feature proposal is missing a title or description")
        return FeatureProposal(title=output.title.strip(), description=output.description.strip())

    if isinstance(output, ReviewJudgementOutput):
        if output.verdict == "accepted":
            return Accepted(summary=output.summary.strip())
        if output.verdict == "questions":
            questions = [question.strip() for question in output.questions if question.strip()]
            if not questions:
                raise OracleProtocolError("Review verdict 'questions' carried no questions")
            return Questions(questions=questions)
        if not output.guidance.strip():
            raise OracleProtocolError("Review verdict 'revise' carried no guidance")
        return Revise(guidance=output.guidance.strip())

    if isinstance(output, AnswerOutput):
        if not output.answer.strip():
            raise OracleProtocolError("Oracle returned an empty answer")
        return Answer(text=output.answer.strip())

    if not output.document.strip():
        raise OracleProtocolError("Oracle returned an empty design document")
    return Summary(text=output.document.strip())


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

class OracleGateway:
    """Sends one structured request per call and returns a normalized decision.

    The oracle is stateless, so the session brief and the conversation log
    (optionally capped to the ``context_window`` most recent entries) travel
    with every request.
    """

    def __init__(
        self,
        adapters: Mapping[RequestKind, SupportsInvoke],
        *,
        context_window: int = 0,
        max_workers: int = 8,
    ) -> None:
        missing = set(RequestKind) - set(adapters)
        if missing:
            raise ValueError(
                "OracleGateway missing adapters for: " + ", ".join(sorted(kind.value for kind in missing))
            )
        if context_window < 0:
            raise ValueError(f"context_window must be >= 0, got: {context_window}")
        self.adapters = dict(adapters)
        self.context_window = context_window
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="oracle")

    @classmethod
    def from_settings(cls, settings: DesignerSettings) -> "OracleGateway":
        """Build one structured adapter per request kind.

        Raises:
            RuntimeError: If OPENROUTER_API_KEY is not available.
        """
        adapters = {
            kind: get_structured_chat_model(
                model_name=settings.oracle_model,
                base_url=settings.oracle_base_url,
                schema=schema,
                temperature=settings.oracle_temperature,
                timeout=settings.oracle_timeout_seconds,
                max_retries=settings.oracle_max_retries,
                max_tokens=settings.oracle_max_tokens,
                method=settings.oracle_output_method,
            )
            for kind, schema in OUTPUT_SCHEMAS.items()
        }
        return cls(adapters, context_window=settings.context_window)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def build_messages(self, session: "Session", request: OracleRequest) -> list[BaseMessage]:
        schema = OUTPUT_SCHEMAS[request.kind]
        system = [
            "You are an expert game designer guiding an autonomous coding agent.",
            _ROLE_BRIEFS[request.kind],
            f"Game description:\n{session.game_description}",
        ]
        if session.design_document:
            system.append(f"Design document:\n{session.design_document}")
        system.append(
            "Respond with a single JSON object matching this JSON schema and nothing else:\n"
            + json.dumps(schema.model_json_schema(), sort_keys=True)
        )
        messages: list[BaseMessage] = [SystemMessage(content="\n\n".join(system))]
        messages.extend(_to_message(entry) for entry in session.conversation.window(self.context_window))
        messages.append(HumanMessage(content=request.prompt))
        return messages

    def request(self, session: "Session", request: OracleRequest, *, deadline: float) -> BaseModel:
        """Run one oracle round trip before ``deadline`` (a ``time.monotonic()`` value).

        Args:
            session: Source of the brief, design document and conversation window.
            request: What to ask; its kind selects the adapter and output schema.
            deadline: Monotonic time by which the decision must be available.

        Returns:
            A decision model from ``DECISIONS_BY_REQUEST[request.kind]``.

        Raises:
            OracleTimeout: If the deadline passes before the oracle answers.
            OracleUnreachable: On network, authentication, HTTP status or other client failures.
            OracleProtocolError: If the reply does not match a known decision shape.
        """
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise OracleTimeout(f"Deadline expired before the {request.kind.value} request was sent")

        adapter = self.adapters[request.kind]
        messages = self.build_messages(session, request)
        logger.debug(
            "Oracle %s request for session '%s' with %d message(s)",
            request.kind.value,
            session.session_name,
            len(messages),
        )
        started = time.monotonic()
        future = self._executor.submit(adapter.invoke, messages)
        try:
            output = future.result(timeout=remaining)
        except FutureTimeoutError as exc:
            future.cancel()
            raise OracleTimeout(
                f"Oracle did not answer the {request.kind.value} request within {remaining:.1f}s"
            ) from exc
        except openai.APITimeoutError as exc:
            raise OracleTimeout(f"Oracle request timed out: {exc}") from exc
        except (openai.APIConnectionError, openai.APIStatusError) as exc:
            raise OracleUnreachable(f"Oracle request failed: {exc}") from exc
        except openai.OpenAIError as exc:
            raise OracleUnreachable(f"Oracle client error ({type(exc).__name__}): {exc}") from exc
        except StructuredOutputError as exc:
            raise OracleProtocolError(str(exc)) from exc
        except OutputParserException as exc:
            raise OracleProtocolError(f"Oracle reply could not be parsed: {exc}") from exc

        decision = to_decision(request.kind, output)
        if not isinstance(decision, DECISIONS_BY_REQUEST[request.kind]):
            raise OracleProtocolError(f"{type(decision).__name__} is not a valid reply to {request.kind.value}")
        logger.debug(
            "Oracle %s answered with %s in %.2fs",
            request.kind.value,
            decision.kind,
            time.monotonic() - started,
        )
        return decision


def _to_message(entry: ConversationEntry) -> BaseMessage:
    if entry.role == ConversationRole.ORACLE:
        return AIMessage(content=entry.content)
    if entry.role == ConversationRole.AGENT:
        return HumanMessage(content=entry.content)
    return HumanMessage(content=f"[note] {entry.content}")
