from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant", "developer"]


class TextPart(BaseModel):
    text: str


class FilePart(BaseModel):
    """Binary content attached to a prompt, e.g. an image or PDF."""

    model_config = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")

    name: str
    mime_type: str
    data: bytes


PromptPart = Union[TextPart, FilePart]

# Test variables are free-form; files loaded from disk come back as FileParts
VarValue = Annotated[Union[FilePart, Any], Field(union_mode="left_to_right")]


class ConversationTurn(BaseModel):
    role: Role
    content: list[PromptPart]


Conversation = list[ConversationTurn]


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost_dollars: float | None = None


class AssertionSpec(BaseModel):
    type: str
    vars: dict[str, Any] = Field(default_factory=dict)


class AssertionResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pass_: bool = Field(alias="pass")
    message: str | None = None


class TestCase(BaseModel):
    __test__ = False
    model_config = ConfigDict(populate_by_name=True)

    description: str | None = None
    vars: dict[str, VarValue] = Field(default_factory=dict)
    assert_: list[AssertionSpec] = Field(default_factory=list, alias="assert")


class PipelineStep(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    prompt: str
    deps: list[str] = Field(default_factory=list)
    if_: str | None = Field(default=None, alias="if")
    output_as: str = Field(default="$output", alias="outputAs")
    # Continue the conversation of the step that produced the first dep
    session: bool = False


class PipelinePrompt(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pipeline: list[PipelineStep] = Field(alias="$pipeline", min_length=1)


Prompt = Union[str, list[dict[str, str]], PipelinePrompt]


class ProviderSpec(BaseModel):
    id: str
    config: dict[str, Any] = Field(default_factory=dict)
    prompts: list[Prompt] | None = None


Provider = Union[str, ProviderSpec]


class EvalConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    description: str | None = None
    providers: list[Provider] = Field(default_factory=list)
    prompts: list[Prompt] = Field(default_factory=list)
    tests: list[TestCase] = Field(default_factory=list)
    default_test: TestCase | None = Field(default=None, alias="defaultTest")


OutputPart = Union[str, FilePart]
Output = Union[str, list[OutputPart]]


class HistoryEntry(BaseModel):
    """One fired pipeline step."""

    id: str
    prompt: Conversation
    output: Output | None = None


class TestOutput(BaseModel):
    __test__ = False

    output: Output | None = None
    raw_output: Any = None
    error: str | None = None
    latency_ms: float | None = None
    token_usage: TokenUsage | None = None
    history: list[HistoryEntry] | None = None


class TestResult(BaseModel):
    __test__ = False
    model_config = ConfigDict(populate_by_name=True)

    pass_: bool = Field(default=False, alias="pass")
    error: str | None = None
    output: Output | None = None
    raw_output: Any = None
    latency_ms: float | None = None
    token_usage: TokenUsage | None = None
    history: list[HistoryEntry] | None = None
    assertion_results: list[AssertionResult] = Field(default_factory=list)


class RunEnv(BaseModel):
    provider: Provider
    prompt: Prompt


class Run(BaseModel):
    version: int = 1
    id: str
    timestamp: int
    description: str | None = None
    envs: list[RunEnv]
    tests: list[TestCase]
    results: list[list[TestResult]] = Field(default_factory=list)
