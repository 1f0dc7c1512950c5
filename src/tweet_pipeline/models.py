"""
Pydantic data models for the tweet pipeline.

Event is the internal, immutable unit of work; TweetMessage and Action
mirror the broker wire contracts on the ingress and egress queues.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import EventValidationError
from .utils import content_hash, generate_id, parse_timestamp, to_epoch


class Event(BaseModel):
    """One ingested unit of data (e.g. a tweet)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(default_factory=generate_id)
    source: str
    payload: dict[str, Any]
    created_at: datetime = Field(alias="createdAt")

    @field_validator("id", mode="before")
    @classmethod
    def _default_id(cls, v):
        # explicit null means "generate one"
        return generate_id() if v is None else v

    @field_validator("id", "source")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("created_at", mode="before")
    @classmethod
    def _coerce_ts(cls, v):
        return parse_timestamp(v)

    # ---------- wire contract ----------

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the documented ``tweet_events`` message schema."""
        p = dict(self.payload)
        msg: dict[str, Any] = {
            "id": self.id,
            "data_source": {
                "name": self.source,
                "author_name": p.pop("author_name", None),
                "author_id": p.pop("author_id", None),
            },
            "createdAt": to_epoch(self.created_at),
            "text": p.pop("text", ""),
            "media": list(p.pop("media", None) or []),
            "links": list(p.pop("links", None) or []),
            "sentiment_analysis": p.pop("sentiment_analysis", None),
        }
        # unknown payload keys ride along at top level
        for k, v in p.items():
            msg.setdefault(k, v)
        return msg

    @classmethod
    def from_wire(cls, msg: Mapping[str, Any]) -> "Event":
        tweet = TweetMessage.model_validate(dict(msg))
        payload: dict[str, Any] = {
            "author_name": tweet.data_source.author_name,
            "author_id": tweet.data_source.author_id,
            "text": tweet.text,
            "media": tweet.media,
            "links": tweet.links,
        }
        if tweet.sentiment_analysis is not None:
            payload["sentiment_analysis"] = tweet.sentiment_analysis.model_dump()
        payload.update(tweet.model_extra or {})
        return cls(
            id=tweet.id,
            source=tweet.data_source.name,
            payload=payload,
            created_at=tweet.createdAt,
        )


class DataSource(BaseModel):
    name: str
    author_name: Optional[str] = None
    author_id: Optional[str] = None

    @field_validator("author_id", mode="before")
    @classmethod
    def _stringify(cls, v):
        return None if v is None else str(v)


class SentimentAnalysis(BaseModel):
    chain_id: Optional[Any] = None
    chain_name: Optional[str] = None
    is_release: Optional[bool] = None
    token_address: Optional[str] = None


class TweetMessage(BaseModel):
    """Ingress wire message as published by the stream ingester."""

    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    data_source: DataSource
    createdAt: datetime
    text: str = ""
    media: list[str] = Field(default_factory=list)
    links: list[str] = Field(default_factory=list)
    sentiment_analysis: Optional[SentimentAnalysis] = None

    @field_validator("createdAt", mode="before")
    @classmethod
    def _coerce_ts(cls, v):
        return parse_timestamp(v)

    @field_validator("media", "links", mode="before")
    @classmethod
    def _none_is_empty(cls, v):
        return [] if v is None else v


class Action(BaseModel):
    """Derived instruction emitted on the ``actions_to_take`` queue."""

    action: str
    params: dict[str, Any] = Field(default_factory=dict)
    event_id: Optional[str] = None

    @field_validator("action")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("action must not be blank")
        return v

    @classmethod
    def snipe(
        cls, *, chain_id: Any, chain_name: str, token_address: str, event_id: str | None = None
    ) -> "Action":
        return cls(
            action="snipe",
            params={
                "chain_id": chain_id,
                "chain_name": chain_name,
                "token_address": token_address,
            },
            event_id=event_id,
        )

    @property
    def idempotency_key(self) -> str:
        """The upstream event id, or a content hash when the producer omitted it."""
        if self.event_id:
            return self.event_id
        return content_hash({"action": self.action, "params": self.params})

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


def parse_event(raw: Any) -> Event:
    """Validate a raw submission (internal shape or wire shape) into an Event.

    Raises:
        EventValidationError: on missing/invalid fields.
    """
    if isinstance(raw, Event):
        return raw
    if not isinstance(raw, Mapping):
        raise EventValidationError(f"event must be a mapping, got {type(raw).__name__}")
    try:
        if "data_source" in raw:
            return Event.from_wire(raw)
        return Event.model_validate(dict(raw))
    except ValidationError as e:
        raise EventValidationError(_summarize(e)) from e
    except ValueError as e:
        raise EventValidationError(str(e)) from e


def parse_action(raw: Any) -> Action:
    if isinstance(raw, Action):
        return raw
    try:
        return Action.model_validate(raw)
    except ValidationError as e:
        raise EventValidationError(_summarize(e)) from e


def _summarize(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(x) for x in err.get("loc", ())) or "<root>"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)
