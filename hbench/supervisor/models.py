import base64
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictStr

from hbench.contracts import MSG_OUTPUT


class InputMessage(BaseModel):
    type: Literal["input"]
    agent: StrictStr
    data: StrictStr


class ResizeMessage(BaseModel):
    type: Literal["resize"]
    agent: StrictStr
    cols: Any = None
    rows: Any = None


class RepoMessage(BaseModel):
    """Envelope for `setup` and `use-existing`; repoUrl is checked by the handler."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["setup", "use-existing"]
    repo_url: Any = Field(default=None, alias="repoUrl")


class OutputFrame(BaseModel):
    type: Literal["output"] = MSG_OUTPUT
    agent: str
    data: str

    @classmethod
    def from_bytes(cls, agent: str, chunk: bytes) -> "OutputFrame":
        return cls(agent=agent, data=base64.b64encode(chunk).decode("ascii"))


class StatusFrame(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["setup-status", "wipe-status"]
    status: Literal["start", "success", "error"]
    repo_url: Optional[str] = Field(default=None, alias="repoUrl")
    message: Optional[str] = None
    mode: Optional[str] = None


def encode_frame(frame: BaseModel) -> str:
    return frame.model_dump_json(by_alias=True, exclude_none=True)


class StopResponse(BaseModel):
    status: str


class AgentStatus(BaseModel):
    agent: str
    phase: str
    pid: Optional[int] = None
    cols: Optional[int] = None
    rows: Optional[int] = None
    returncode: Optional[int] = None
    worktree: Optional[str] = None
