"""Client options: identity, store connection, delivery policy and subscriptions."""

import json
import os
import re
from enum import Enum
from typing import Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from durable_pubsub.errors import ConfigurationError
from durable_pubsub.keys import MESSAGE_KEY_SEPARATOR
from durable_pubsub.retry import RetryPolicy

# Same rule the subscription schema has always used: a name with at least one word character
PRODUCER_NAME = re.compile(r"[\w\d]+")

DEFAULT_MESSAGE_TTL = 60 * 60 * 24


class DeliveryPolicy(str, Enum):
    """How in-flight records are scoped and when a loop re-arms.

    SHARED: one recoverable record per consumer identity, re-arm right after
    dispatch, replay leftovers on start. Only one instance per identity.
    INSTANCE: one record per running instance, re-arm only after the
    acknowledgment. Several instances per identity are safe; a crashed
    instance's in-flight message is not redelivered.
    """

    SHARED = "shared"
    INSTANCE = "instance"


class ConnectionOptions(BaseModel):
    host: str = "127.0.0.1"
    port: int = Field(default=6379, ge=1, le=65535)
    db: int = 0
    password: Optional[str] = None


class RetryOptions(BaseModel):
    """Backoff settings for transient store faults."""

    backoff_base: float = Field(default=0.5, gt=0)
    backoff_mult: float = Field(default=2.0, ge=1)
    max_backoff: float = Field(default=30.0, gt=0)
    publish_attempts: int = Field(default=3, ge=1)
    ack_attempts: int = Field(default=10, ge=1)

    def policy(self, max_attempts: Optional[int]) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=max_attempts,
            backoff_base=self.backoff_base,
            backoff_mult=self.backoff_mult,
            max_backoff=self.max_backoff,
        )


def check_action(action: str) -> str:
    """Actions become the prefix of message keys, so they cannot contain the key separator."""
    if not action:
        raise ValueError("action name must not be empty")
    if MESSAGE_KEY_SEPARATOR in action:
        raise ValueError(f"action name {action!r} must not contain {MESSAGE_KEY_SEPARATOR!r}")
    return action


def check_subscribe_to(value: Dict[str, List[str]]) -> Dict[str, List[str]]:
    """Validate a ``{producer: [action, ...]}`` map."""
    for producer, actions in value.items():
        if not PRODUCER_NAME.search(producer):
            raise ValueError(f"invalid producer name {producer!r}")
        if len(set(actions)) != len(actions):
            raise ValueError(f"duplicate actions for producer {producer!r}")
        for action in actions:
            check_action(action)
    return value


class ClientOptions(BaseModel):
    """Everything a Client needs; validated once, at construction."""

    identity: str = Field(min_length=1)
    connection: ConnectionOptions = Field(default_factory=ConnectionOptions)
    policy: DeliveryPolicy = DeliveryPolicy.SHARED
    subscribe_to: Dict[str, List[str]] = Field(default_factory=dict)
    message_ttl: Optional[int] = DEFAULT_MESSAGE_TTL
    # 0 blocks forever; an idle consumer should not poll
    block_timeout: float = Field(default=0, ge=0)
    retry: RetryOptions = Field(default_factory=RetryOptions)

    @field_validator("subscribe_to")
    @classmethod
    def _valid_subscriptions(cls, value: Dict[str, List[str]]) -> Dict[str, List[str]]:
        return check_subscribe_to(value)

    @field_validator("message_ttl")
    @classmethod
    def _positive_ttl(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value <= 0:
            raise ValueError("message_ttl must be positive or None")
        return value

    @model_validator(mode="after")
    def _no_self_subscription(self) -> "ClientOptions":
        if self.identity in self.subscribe_to:
            raise ValueError(f"{self.identity!r} cannot subscribe to its own actions")
        return self

    @classmethod
    def build(cls, **values) -> "ClientOptions":
        """Validate keyword options, raising ConfigurationError instead of ValidationError."""
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(f"Bad options passed to durable_pubsub: {e}") from e

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "ClientOptions":
        """Build options from the environment (and a .env file, if present)."""
        load_dotenv(dotenv_path)
        values: dict = {
            "identity": os.environ.get("PUBSUB_IDENTITY", "").strip(),
            "connection": {
                "host": os.environ.get("REDIS_HOST", "127.0.0.1"),
                "port": os.environ.get("REDIS_PORT", "6379"),
                "db": os.environ.get("REDIS_DB", "0"),
                "password": os.environ.get("REDIS_PASSWORD") or None,
            },
        }
        if os.environ.get("PUBSUB_POLICY"):
            values["policy"] = os.environ["PUBSUB_POLICY"].strip().lower()
        if os.environ.get("PUBSUB_SUBSCRIBE_TO"):
            try:
                values["subscribe_to"] = json.loads(os.environ["PUBSUB_SUBSCRIBE_TO"])
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"PUBSUB_SUBSCRIBE_TO is not valid JSON: {e}") from e
        if "PUBSUB_MESSAGE_TTL" in os.environ:
            ttl = os.environ["PUBSUB_MESSAGE_TTL"].strip()
            values["message_ttl"] = None if ttl in ("", "0", "none") else ttl
        return cls.build(**values)
