"""Negotiation envelopes carried opaquely inside ``signal`` messages."""

from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from schemas.messages import MalformedMessage


class SessionDescription(BaseModel):
    type: Literal["offer", "answer"]
    sdp: str


class IceCandidate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    candidate: str
    sdp_mid: Optional[str] = Field(None, alias="sdpMid")
    sdp_m_line_index: Optional[int] = Field(None, alias="sdpMLineIndex")


class OfferSignal(BaseModel):
    type: Literal["offer"]
    sdp: SessionDescription


class AnswerSignal(BaseModel):
    type: Literal["answer"]
    sdp: SessionDescription


class CandidateSignal(BaseModel):
    type: Literal["candidate"]
    candidate: IceCandidate


NegotiationSignal = Annotated[
    Union[OfferSignal, AnswerSignal, CandidateSignal],
    Field(discriminator="type"),
]

_signal_adapter = TypeAdapter(NegotiationSignal)


def parse_signal(data: Dict[str, Any]) -> NegotiationSignal:
    try:
        return _signal_adapter.validate_python(data)
    except ValidationError as e:
        raise MalformedMessage(f"Invalid negotiation signal: {e.error_count()} error(s)") from e


def offer_signal(description: SessionDescription) -> Dict[str, Any]:
    return OfferSignal(type="offer", sdp=description).model_dump(by_alias=True)


def answer_signal(description: SessionDescription) -> Dict[str, Any]:
    return AnswerSignal(type="answer", sdp=description).model_dump(by_alias=True)


def candidate_signal(candidate: IceCandidate) -> Dict[str, Any]:
    return CandidateSignal(type="candidate", candidate=candidate).model_dump(by_alias=True)
