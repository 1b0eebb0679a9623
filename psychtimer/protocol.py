"""WebSocket protocol: message models and constants.

Inbound frames are JSON objects decoded into :class:`CommandMessage`;
outbound frames are :class:`StatusMessage` objects encoded as compact JSON.
"""

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

# ── Client -> Server actions ──────────────────────────────────────────

ACTION_START = "START"
ACTION_CANCEL = "CANCEL"
ACTION_KEY = "KEY"
ACTION_CONTINUE = "CONTINUE"

# ── Server -> Client status kinds ─────────────────────────────────────

KIND_INSTRUCTIONS = "INSTRUCTIONS"
KIND_STATUS = "STATUS"
KIND_WAITING = "WAITING"
KIND_FINISHED = "FINISHED"
KIND_ERROR = "ERROR"


class CommandMessage(BaseModel):
    """One operator action. Missing fields default to empty/zero."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    subject_id: str = Field("", alias="subjectID")
    action: str = ""
    content: str = ""
    key_code: int = Field(0, alias="keyCode", ge=0, le=255, strict=True)

    @field_validator("*", mode="before")
    @classmethod
    def null_is_default(cls, value, info: ValidationInfo):
        # Browsers send null for unset fields; treat it like a missing one.
        if value is None:
            return cls.model_fields[info.field_name].default
        return value


class StatusMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str
    message: str = ""


def decode_command(payload: str | bytes) -> CommandMessage:
    """Parse one inbound frame. Raises pydantic.ValidationError on bad input."""
    return CommandMessage.model_validate_json(payload)


def encode_status(msg: StatusMessage) -> str:
    return msg.model_dump_json()
