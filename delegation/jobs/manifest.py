"""Job manifest schema.

The manifest is the immutable description of the work a caller submits. Field
names are snake_case in Python and camelCase on the wire (``agentType``,
``vmTemplate``, ``statusMode``, ``claudeModel``).
"""

import re
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from delegation.jobs.types import AgentType, Lifecycle, StatusMode

SIZE_PATTERN = r"^\d+[GMK]$"
ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class _ManifestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="forbid")


class AgentConfig(_ManifestModel):
    """Agent launch overrides."""

    command: Optional[str] = Field(
        default=None, description="Command to run (script/custom agents)"
    )
    claude_model: Optional[str] = Field(
        default=None, alias="claudeModel", description="Model for claude agents"
    )


class JobFile(_ManifestModel):
    """A file written into the VM before the agent starts."""

    path: str = Field(..., min_length=1, description="Destination path in the VM")
    content: str = Field(..., description="File content")
    encoding: Literal["base64", "text"] = Field(
        default="base64", description="How ``content`` is encoded"
    )


class JobResources(_ManifestModel):
    """VM sizing hints."""

    cpu: Optional[int] = Field(default=None, ge=1, le=32, description="vCPU count")
    memory: Optional[str] = Field(
        default=None, pattern=SIZE_PATTERN, description="Memory, e.g. 4G"
    )
    disk: Optional[str] = Field(
        default=None, pattern=SIZE_PATTERN, description="Disk size, e.g. 20G"
    )


class JobManifest(_ManifestModel):
    """Description of a job submitted for execution."""

    task: str = Field(..., min_length=1, description="Task description for the agent")
    agent_type: AgentType = Field(..., alias="agentType")
    agent: Optional[AgentConfig] = None
    files: Optional[list[JobFile]] = None
    env: Optional[dict[str, str]] = None
    secrets: Optional[list[str]] = Field(
        default=None, description="Secret names to inject (never values)"
    )
    resources: Optional[JobResources] = None
    timeout: Optional[int] = Field(
        default=None, ge=1, le=86400, description="Job timeout in seconds"
    )
    lifecycle: Optional[Lifecycle] = None
    vm_template: Optional[str] = Field(default=None, alias="vmTemplate")
    status_mode: Optional[StatusMode] = Field(default=None, alias="statusMode")

    @field_validator("env")
    @classmethod
    def validate_env_names(cls, v):
        """Environment variable names must be valid shell identifiers."""
        if v:
            bad = sorted(name for name in v if not ENV_NAME_RE.match(name))
            if bad:
                raise ValueError(f"Invalid environment variable names: {bad}")
        return v

    @property
    def is_persistent(self) -> bool:
        """True if the VM should outlive the job."""
        return self.lifecycle == Lifecycle.PERSISTENT

    def to_wire(self) -> dict:
        """Serialize with wire (camelCase) field names, omitting unset fields."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
