from __future__ import annotations

import time
from pathlib import Path
from typing import Any

import httpx
import openai
import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from game_designer.errors import OracleProtocolError, OracleTimeout, OracleUnreachable
from game_designer.llm import (
    StructuredOutputAdapter,
    StructuredOutputError,
    get_structured_chat_model,
    normalize_structured_output,
)
from game_designer.models import (
    Accepted,
    Answer,
    ConversationRole,
    ConversationTopic,
    DesignComplete,
    FeatureProposal,
    OracleRequest,
    Questions,
    RequestKind,
    Revise,
    Summary,
)
from game_designer.oracle import (
    AnswerOutput,
    DesignDocumentOutput,
    FeatureProposalOutput,
    OracleGateway,
    ReviewJudgementOutput,
    to_decision,
)
from game_designer.session import Session

_REQUEST = httpx.Request("POST", "https://openrouter.ai/api/v1/chat/completions")


class FakeAdapter:
    """Stands in for a structured-output adapter: returns or raises a fixed value."""

    def __init__(self, result: Any = None, *, delay: float = 0.0) -> None:
        self.result = result
        self.delay = delay
        self.calls: list[list[Any]] = []

    def invoke(self, messages: Any) -> Any:
        self.calls.append(messages)
        if self.delay:
            time.sleep(self.delay)
        if isinstance(self.result, BaseException):
            raise self.result
        return self.result


def _gateway(**overrides: FakeAdapter) -> OracleGateway:
    adapters = {kind: FakeAdapter(AnswerOutput(answer="unused")) for kind in RequestKind}
    adapters.update({RequestKind(kind): adapter for kind, adapter in overrides.items()})
    return OracleGateway(adapters)


def _ask(gateway: OracleGateway, session: Session | None = None, *, timeout: float = 5.0) -> Any:
    session = session or Session.new("demo", "match-3 puzzle game")
    request = OracleRequest(kind=RequestKind.ANSWER_QUESTION, prompt="How big is the grid?")
    return gateway.request(session, request, deadline=time.monotonic() + timeout)


def test_feature_proposal_output_maps_to_decisions() -> None:
    proposal = to_decision(
        RequestKind.PROPOSE_FEATURE,
        FeatureProposalOutput(title=" Grid ", description=" Render an 8x8 grid. "),
    )
    complete = to_decision(
        RequestKind.PROPOSE_FEATURE,
        FeatureProposalOutput(design_complete=True, message="All done."),
    )

    assert proposal == FeatureProposal(title="Grid", description="Render an 8x8 grid.")
    assert complete == DesignComplete(message="All done.")


def test_review_judgement_output_maps_to_each_verdict() -> None:
    kind = RequestKind.JUDGE_REVIEW
    assert to_decision(kind, ReviewJudgementOutput(verdict="accepted", summary="Good.")) == Accepted(summary="Good.")
    assert to_decision(kind, ReviewJudgementOutput(verdict="questions", questions=["Why?", " "])) == Questions(
        questions=["Why?"]
    )
    assert to_decision(kind, ReviewJudgementOutput(verdict="revise", guidance="Add sound.")) == Revise(
        guidance="Add sound."
    )


@pytest.mark.parametrize(
    ("kind", "output"),
    [
        (RequestKind.PROPOSE_FEATURE, FeatureProposalOutput(title="Grid")),
        (RequestKind.JUDGE_REVIEW, ReviewJudgementOutput(verdict="questions")),
        (RequestKind.JUDGE_REVIEW, ReviewJudgementOutput(verdict="revise", guidance="  ")),
        (RequestKind.ANSWER_QUESTION, AnswerOutput(answer="")),
        (RequestKind.SUMMARIZE, DesignDocumentOutput(document=" ")),
        (RequestKind.SUMMARIZE, AnswerOutput(answer="wrong schema")),
    ],
)
def test_incomplete_outputs_are_protocol_errors(kind: RequestKind, output: Any) -> None:
    with pytest.raises(OracleProtocolError):
        to_decision(kind, output)


def test_gateway_requires_an_adapter_per_request_kind() -> None:
    with pytest.raises(ValueError, match="summarize"):
        OracleGateway({RequestKind.ANSWER_QUESTION: FakeAdapter()})


def test_gateway_returns_normalized_decision() -> None:
    gateway = _gateway(answer_question=FakeAdapter(AnswerOutput(answer=" Eight by eight. ")))
    try:
        assert _ask(gateway) == Answer(text="Eight by eight.")
    finally:
        gateway.close()


def test_gateway_enforces_the_deadline() -> None:
    gateway = _gateway(answer_question=FakeAdapter(AnswerOutput(answer="late"), delay=1.0))
    started = time.monotonic()
    try:
        with pytest.raises(OracleTimeout):
            _ask(gateway, timeout=0.05)
    finally:
        gateway.close()
    assert time.monotonic() - started < 0.9


def test_expired_deadline_never_reaches_the_adapter() -> None:
    adapter = FakeAdapter(AnswerOutput(answer="unused"))
    gateway = _gateway(answer_question=adapter)
    try:
        with pytest.raises(OracleTimeout):
            _ask(gateway, timeout=-1.0)
    finally:
        gateway.close()
    assert adapter.calls == []


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (openai.APITimeoutError(request=_REQUEST), OracleTimeout),
        (openai.APIConnectionError(request=_REQUEST), OracleUnreachable),
        (
            openai.APIStatusError(
                "Service Unavailable",
                response=httpx.Response(503, request=_REQUEST),
                body=None,
            ),
            OracleUnreachable,
        ),
        (
            openai.APIResponseValidationError(response=httpx.Response(200, request=_REQUEST), body=None),
            OracleUnreachable,
        ),
        (StructuredOutputError(AnswerOutput, "validation failed"), OracleProtocolError),
    ],
)
def test_transport_failures_map_onto_oracle_errors(error: Exception, expected: type[Exception]) -> None:
    gateway = _gateway(answer_question=FakeAdapter(error))
    try:
        with pytest.raises(expected):
            _ask(gateway)
    finally:
        gateway.close()


def test_build_messages_carries_brief_design_and_log_window() -> None:
    session = Session.new("demo", "match-3 puzzle game")
    session.design_document = "Core concept: swap gems."
    session.conversation.append(ConversationRole.AGENT, ConversationTopic.ASK, "first question")
    session.conversation.append(ConversationRole.ORACLE, ConversationTopic.ASK, "first answer")
    session.conversation.append(ConversationRole.SYSTEM, ConversationTopic.DESIGN, "brief updated")
    adapters = {kind: FakeAdapter() for kind in RequestKind}
    request = OracleRequest(kind=RequestKind.JUDGE_REVIEW, prompt="Judge this.")

    full = OracleGateway(adapters).build_messages(session, request)
    windowed = OracleGateway(adapters, context_window=2).build_messages(session, request)

    assert isinstance(full[0], SystemMessage)
    assert "match-3 puzzle game" in full[0].content
    assert "Core concept: swap gems." in full[0].content
    assert '"verdict"' in full[0].content
    assert [type(message) for message in full[1:]] == [HumanMessage, AIMessage, HumanMessage, HumanMessage]
    assert full[3].content == "[note] brief updated"
    assert full[-1].content == "Judge this."
    assert [message.content for message in windowed[1:-1]] == ["first answer", "[note] brief updated"]


def test_normalize_structured_output_handles_envelopes() -> None:
    parsed = normalize_structured_output(
        raw_output={"raw": None, "parsed": {"answer": "yes"}, "parsing_error": None},
        schema=AnswerOutput,
    )
    assert parsed == AnswerOutput(answer="yes")

    with pytest.raises(StructuredOutputError, match="could not be parsed"):
        normalize_structured_output(
            raw_output={"raw": None, "parsed": None, "parsing_error": ValueError("bad json")},
            schema=AnswerOutput,
        )
    with pytest.raises(StructuredOutputError, match="validation failed"):
        normalize_structured_output(raw_output={"document": "x"}, schema=AnswerOutput)


def test_normalize_structured_output_recovers_fenced_json() -> None:
    raw = AIMessage(content='Thinking done.\n```json\n{"answer": "Use a tween."}\n```')

    parsed = normalize_structured_output(
        raw_output={"raw": raw, "parsed": None, "parsing_error": ValueError("Invalid json output")},
        schema=AnswerOutput,
    )

    assert parsed == AnswerOutput(answer="Use a tween.")


def test_structured_adapter_validates_runnable_output() -> None:
    adapter = StructuredOutputAdapter(schema=DesignDocumentOutput, runnable=FakeAdapter({"document": "GDD"}))
    assert adapter.invoke([HumanMessage(content="x")]) == DesignDocumentOutput(document="GDD")


def test_structured_chat_model_requires_api_key(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    with pytest.raises(RuntimeError, match="OPENROUTER_API_KEY"):
        get_structured_chat_model(
            model_name="some/model",
            base_url="https://openrouter.ai/api/v1",
            schema=Summary,
            repo_root=tmp_path,
        )


def test_structured_chat_model_rejects_strict_json_mode(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENROUTER_API_KEY", "test-key")
    with pytest.raises(ValueError, match="strict"):
        get_structured_chat_model(
            model_name="some/model",
            base_url="https://openrouter.ai/api/v1",
            schema=Summary,
            strict=True,
        )
