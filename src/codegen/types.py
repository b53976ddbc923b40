from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Literal["system", "user", "assistant", "tool"]
    content: Union[str, List[Dict[str, Any]]]


class LLMModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    provider_id: str = Field(alias="providerId")
    name: Optional[str] = None
    provider: Optional[str] = None
    multi_modal: Optional[bool] = Field(default=None, alias="multiModal")


class LLMModelConfig(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    model: Optional[str] = None
    api_key: Optional[str] = Field(default=None, alias="apiKey", repr=False)
    base_url: Optional[str] = Field(default=None, alias="baseURL")
    temperature: Optional[float] = None
    top_p: Optional[float] = Field(default=None, alias="topP")
    top_k: Optional[int] = Field(default=None, alias="topK")
    frequency_penalty: Optional[float] = Field(default=None, alias="frequencyPenalty")
    presence_penalty: Optional[float] = Field(default=None, alias="presencePenalty")
    max_tokens: Optional[int] = Field(default=None, alias="maxTokens")

    def has_api_key(self) -> bool:
        return bool(self.api_key and self.api_key.strip())

    def generation_params(self) -> dict[str, Any]:
        """Parameter overrides forwarded upstream, without model/credential/endpoint."""
        params: dict[str, Any] = {}
        for field in (
            "temperature",
            "top_p",
            "top_k",
            "frequency_penalty",
            "presence_penalty",
            "max_tokens",
        ):
            value = getattr(self, field)
            if value is not None:
                params[field] = value
        extra = self.model_extra or {}
        for key, value in extra.items():
            if value is None or key in params:
                continue
            params[key] = value
        return params

    def redacted(self) -> dict[str, Any]:
        data = self.model_dump(mode="json", exclude_none=True, exclude={"api_key"})
        data["has_api_key"] = self.has_api_key()
        return data


class TemplateDef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = ""
    lib: List[str] = Field(default_factory=list)
    file: Optional[str] = None
    instructions: str = ""
    port: Optional[int] = None


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    messages: List[ChatMessage]
    user_id: Optional[str] = Field(default=None, alias="userID")
    team_id: Optional[str] = Field(default=None, alias="teamID")
    template: Union[str, Dict[str, TemplateDef]] = "auto"
    model: LLMModel
    config: LLMModelConfig = Field(default_factory=LLMModelConfig)


class FragmentSchema(BaseModel):
    """Structured code fragment the upstream model is asked to produce."""

    commentary: str = Field(
        description="Describe what you're about to do and the steps you want to take for generating the fragment in great detail."
    )
    template: str = Field(description="Name of the template used to generate the fragment.")
    title: str = Field(description="Short title of the fragment. Max 3 words.")
    description: str = Field(description="Short description of the fragment. Max 1 sentence.")
    additional_dependencies: List[str] = Field(
        description="Additional dependencies required by the fragment. Do not include dependencies that are already included in the template."
    )
    has_additional_dependencies: bool = Field(
        description="Detect if additional dependencies that are not included in the template are required by the fragment."
    )
    install_dependencies_command: str = Field(
        description="Command to install additional dependencies required by the fragment."
    )
    port: Optional[int] = Field(
        description="Port number used by the resulted fragment. Null when no ports are exposed."
    )
    file_path: str = Field(description="Relative path to the file, including the file name.")
    code: str = Field(description="Code generated by the fragment. Only runnable code is allowed.")


def fragment_json_schema() -> dict[str, Any]:
    return FragmentSchema.model_json_schema()


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit_amount: int
    remaining: int
    reset_at: int
