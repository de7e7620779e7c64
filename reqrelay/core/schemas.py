"""Request and configuration payloads. All are Pydantic models."""

from __future__ import annotations

from string import Template
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

FILE_REF_SCHEME = "fileid://"


def file_ref(file_id: str) -> str:
    """Provider-side reference to an uploaded file (Qwen-long convention)."""
    return f"{FILE_REF_SCHEME}{file_id}"


class GenerationRequest(BaseModel):
    """One content-generation call. Built once by the Request Source, never mutated."""

    model_config = ConfigDict(frozen=True)

    file_ids: tuple[str, ...] = Field(description="Uploaded source files, in order")
    role: str = Field(default="", description="System-role / persona instructions")
    template: str = Field(default="", description="Prompt template with ${name} placeholders")
    variables: dict[str, str] = Field(default_factory=dict)

    def file_refs(self) -> list[str]:
        return [file_ref(fid) for fid in self.file_ids]

    def render_prompt(self) -> str:
        """Substitute ${files}, ${<file id>} and ${<variable>}; unknown names stay as written."""
        mapping: dict[str, Any] = {"files": ",".join(self.file_refs())}
        for fid in self.file_ids:
            mapping[fid] = file_ref(fid)
        mapping.update(self.variables)
        return Template(self.template).safe_substitute(mapping)


class ModelConfig(BaseModel):
    """Provider connection settings. `api_key` is the encrypted token unless no key is configured."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = ""
    name: str = ""
    model: str
    base_url: str = Field(alias="baseURL")
    api_key: str = Field(default="", alias="apiKey")
    is_default: bool = Field(default=False, alias="isDefault")
    temperature: Optional[float] = None
    max_tokens: Optional[int] = Field(default=None, alias="maxTokens")

    def masked(self) -> dict[str, Any]:
        """Dump for API responses: API key never leaves the server."""
        data = self.model_dump(by_alias=True)
        data["apiKey"] = "********" if self.api_key else ""
        return data
