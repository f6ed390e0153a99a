"""Data models for cross-layer communication."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

Role = Literal["system", "user", "assistant", "tool"]


class FunctionCall(BaseModel):
    """ツール呼び出しの関数名と引数（JSON文字列）."""

    name: str = ""
    arguments: str = ""

    @field_validator("name", "arguments", mode="before")
    @classmethod
    def null_as_empty(cls, v: object) -> object:
        return "" if v is None else v


class ToolCall(BaseModel):
    """モデルが要求したツール呼び出し.

    index はストリーム上の位置で、APIへ送り返す際には含めない.
    """

    id: str = ""
    type: str = "function"
    index: int | None = Field(default=None, exclude=True)
    function: FunctionCall = Field(default_factory=FunctionCall)

    @field_validator("id", "type", mode="before")
    @classmethod
    def null_as_default(cls, v: object) -> object:
        # ストリームの途中チャンクでは id/type が null のことがある
        return "" if v is None else v


class Message(BaseModel):
    """会話メッセージ."""

    role: Role
    content: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """APIリクエスト用のdictに変換する（未設定フィールドは省略）."""
        return self.model_dump(exclude_none=True)


class FunctionDefinition(BaseModel):
    """ツールの関数定義（JSON Schemaのパラメータ付き）."""

    name: str
    description: str
    parameters: dict[str, Any]


class Tool(BaseModel):
    """モデルに提示するツール."""

    type: str = "function"
    function: FunctionDefinition


class ChatRequest(BaseModel):
    """Chat Completions リクエスト."""

    model: str
    messages: list[Message]
    tools: list[Tool] | None = None
    stream: bool = False

    def to_payload(self) -> dict[str, Any]:
        """送信用のdictに変換する."""
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_payload() for m in self.messages],
            "stream": self.stream,
        }
        if self.tools:
            payload["tools"] = [t.model_dump() for t in self.tools]
        return payload


class Usage(BaseModel):
    """トークン使用量."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class Delta(BaseModel):
    """ストリーミングチャンクの差分."""

    role: str | None = None
    content: str | None = None
    tool_calls: list[ToolCall] | None = None


class Choice(BaseModel):
    """応答の候補."""

    index: int = 0
    message: Message | None = None
    delta: Delta | None = None
    finish_reason: str | None = None


class ChatResponse(BaseModel):
    """Chat Completions レスポンス（ストリーミングのチャンクにも使う）."""

    id: str = ""
    choices: list[Choice] = Field(default_factory=list)
    usage: Usage | None = None

    @property
    def message(self) -> Message | None:
        """最初の候補のメッセージ."""
        if not self.choices:
            return None
        return self.choices[0].message

    @property
    def content(self) -> str:
        """最初の候補の本文（なければ空文字）."""
        message = self.message
        if message is None or message.content is None:
            return ""
        return message.content

    @property
    def tool_calls(self) -> list[ToolCall]:
        """最初の候補のツール呼び出し一覧."""
        message = self.message
        if message is None or not message.tool_calls:
            return []
        return message.tool_calls


class PermissionRule(BaseModel):
    """コマンドを許可・拒否するパターンルール."""

    pattern: str
    tool: str = "Bash"


class Permissions(BaseModel):
    """許可ルールと拒否ルールの一覧."""

    allow: list[PermissionRule] = Field(default_factory=list)
    deny: list[PermissionRule] = Field(default_factory=list)

    @field_validator("allow", "deny", mode="before")
    @classmethod
    def null_as_empty(cls, v: object) -> object:
        """null のルール一覧を空リストとして扱う."""
        return [] if v is None else v


class PermissionSettings(BaseModel):
    """パーミッション設定ファイルの内容."""

    permissions: Permissions = Field(default_factory=Permissions)
    auto_allow_safe_commands: bool = True
    dangerous_enabled: bool = False
