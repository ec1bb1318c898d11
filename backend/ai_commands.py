"""
Strict parsing of command markup embedded in assistant replies.

Model output is untrusted input. Commands are written by the model as
``<<<TAG=payload>>>``; every payload is validated against a schema before the
server may act on it, and anything that fails becomes ``UnrecognizedCommand``.
"""
import json
import logging
import re
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from medication_schedule import normalize_times

logger = logging.getLogger(__name__)

COMMAND_PATTERN = re.compile(r"<<<([A-Za-z_]+)=(.*?)>>>", re.DOTALL)
MAX_COMMANDS_PER_REPLY = 5


class SendMessageCommand(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)
    kind: Literal["send_message"] = "send_message"
    recipient_id: str = Field(alias="recipientId", min_length=1, max_length=128)
    message: str = Field(min_length=1, max_length=1000)

    @field_validator("message")
    @classmethod
    def strip_message(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("message must not be blank")
        return cleaned


class AddMedicineCommand(BaseModel):
    model_config = ConfigDict(extra="forbid")
    kind: Literal["add_medicine"] = "add_medicine"
    name: str = Field(min_length=1, max_length=120)
    dosage: str = Field(min_length=1, max_length=120)
    times: List[str] = Field(min_length=1, max_length=12)
    instructions: str = Field(default="", max_length=500)

    @field_validator("times")
    @classmethod
    def validate_times(cls, values: List[str]) -> List[str]:
        valid, rejected = normalize_times(values)
        if rejected or not valid:
            raise ValueError(f"invalid times: {rejected or values}")
        return valid


class VisualizeCommand(BaseModel):
    model_config = ConfigDict(extra="forbid")
    kind: Literal["visualize"] = "visualize"
    prompt: str = Field(min_length=1, max_length=400)


class UnrecognizedCommand(BaseModel):
    kind: Literal["unrecognized"] = "unrecognized"
    tag: str
    raw: str
    reason: str


AssistantCommand = Annotated[
    Union[SendMessageCommand, AddMedicineCommand, VisualizeCommand, UnrecognizedCommand],
    Field(discriminator="kind")
]

_command_adapter = TypeAdapter(AssistantCommand)


class ParsedReply(BaseModel):
    text: str
    commands: List[AssistantCommand] = []


def _json_payload(raw: str) -> dict:
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("payload must be a JSON object")
    return data


def parse_command(tag: str, raw: str):
    """Validate a single ``tag``/``payload`` pair into one command variant."""
    normalized_tag = tag.strip().upper()
    try:
        if normalized_tag == "SEND_MESSAGE":
            return _command_adapter.validate_python({**_json_payload(raw), "kind": "send_message"})
        if normalized_tag == "ADD_MEDICINE":
            return _command_adapter.validate_python({**_json_payload(raw), "kind": "add_medicine"})
        if normalized_tag == "VISUALIZE":
            return _command_adapter.validate_python({"kind": "visualize", "prompt": raw.strip()})
    except (ValueError, ValidationError) as exc:
        # json.JSONDecodeError is a ValueError
        logger.warning(f"Rejected assistant command {normalized_tag}: {exc}")
        return UnrecognizedCommand(tag=normalized_tag, raw=raw[:500], reason=str(exc)[:240])
    return UnrecognizedCommand(tag=normalized_tag, raw=raw[:500], reason="unknown command tag")


def parse_assistant_reply(text: Optional[str]) -> ParsedReply:
    """Strip command markup from ``text`` and return the validated commands."""
    source = text or ""
    commands = []
    for index, match in enumerate(COMMAND_PATTERN.finditer(source)):
        if index >= MAX_COMMANDS_PER_REPLY:
            commands.append(UnrecognizedCommand(
                tag=match.group(1).upper(),
                raw=match.group(2)[:500],
                reason="too many commands in one reply"
            ))
            continue
        commands.append(parse_command(match.group(1), match.group(2)))
    cleaned = COMMAND_PATTERN.sub("", source)
    cleaned = re.sub(r"[ \t]+\n", "\n", cleaned).strip()
    return ParsedReply(text=cleaned, commands=commands)
