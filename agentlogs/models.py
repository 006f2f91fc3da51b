"""Pydantic models for agentlogs canonical transcripts."""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field

TranscriptSource = Literal["claude-code", "codex", "cline", "opencode", "pi"]

TRANSCRIPT_SOURCES: tuple[str, ...] = ("claude-code", "codex", "cline", "opencode", "pi")


# ── Usage models ───────────────────────────────────────────────────

class TokenUsage(BaseModel):
    inputTokens: int = 0  # includes cached input
    cachedInputTokens: int = 0
    outputTokens: int = 0
    reasoningOutputTokens: int = 0
    totalTokens: int = 0

    def add(self, other: "TokenUsage") -> None:
        self.inputTokens += other.inputTokens
        self.cachedInputTokens += other.cachedInputTokens
        self.outputTokens += other.outputTokens
        self.reasoningOutputTokens += other.reasoningOutputTokens
        self.totalTokens += other.totalTokens


class ModelUsage(BaseModel):
    model: str
    usage: TokenUsage = Field(default_factory=TokenUsage)


class GitContext(BaseModel):
    repo: Optional[str] = None  # host/owner/name
    branch: Optional[str] = None
    relativeCwd: Optional[str] = None


# ── Message models ─────────────────────────────────────────────────

class UserMessage(BaseModel):
    type: Literal["user"] = "user"
    text: str
    id: Optional[str] = None
    timestamp: Optional[str] = None


class ThinkingMessage(BaseModel):
    type: Literal["thinking"] = "thinking"
    text: str
    id: Optional[str] = None
    timestamp: Optional[str] = None
    model: Optional[str] = None


class AgentMessage(BaseModel):
    type: Literal["agent"] = "agent"
    text: str
    id: Optional[str] = None
    timestamp: Optional[str] = None
    model: Optional[str] = None


class ToolCallMessage(BaseModel):
    type: Literal["tool-call"] = "tool-call"
    id: Optional[str] = None  # provider call id
    toolName: Optional[str] = None
    input: Any = None
    output: Any = None  # None until the result arrives
    error: Optional[str] = None
    isError: Optional[bool] = None
    timestamp: Optional[str] = None
    model: Optional[str] = None


TranscriptMessage = Annotated[
    Union[UserMessage, ThinkingMessage, AgentMessage, ToolCallMessage],
    Field(discriminator="type"),
]


# ── Transcript models ──────────────────────────────────────────────

class Transcript(BaseModel):
    v: int = 1
    id: str
    source: TranscriptSource
    timestamp: datetime
    preview: Optional[str] = None
    summary: Optional[str] = None
    model: Optional[str] = None
    clientVersion: Optional[str] = None
    blendedTokens: int = 0
    costUsd: float = 0.0
    messageCount: int = 0
    userMessageCount: int = 0
    toolCount: int = 0
    filesChanged: int = 0
    linesAdded: int = 0
    linesRemoved: int = 0
    linesModified: int = 0
    tokenUsage: TokenUsage = Field(default_factory=TokenUsage)
    modelUsage: list[ModelUsage] = Field(default_factory=list)
    git: Optional[GitContext] = None
    cwd: str = ""
    messages: list[TranscriptMessage] = Field(default_factory=list)


class TranscriptStats(BaseModel):
    filesChanged: int = 0
    linesAdded: int = 0
    linesRemoved: int = 0
    linesModified: int = 0


class DiscoveredTranscript(BaseModel):
    id: str
    source: TranscriptSource
    path: str  # file path, or the session id for CLI-backed sources
    timestamp: datetime
    preview: Optional[str] = None
    cwd: Optional[str] = None
    repoId: Optional[str] = None  # git lookup is deferred past discovery
    stats: Optional[TranscriptStats] = None


# ── Analysis models ────────────────────────────────────────────────

class AnalysisMetrics(BaseModel):
    totalEvents: int = 0
    toolCalls: int = 0
    errors: int = 0
    retries: int = 0
    contextOverflows: int = 0
    duration: int = 0  # milliseconds


class AntiPattern(BaseModel):
    type: str  # retry_loops | context_overflow | tool_failures | extended_reasoning | ...
    description: str
    severity: Literal["low", "medium", "high"] = "low"


class AnalysisResult(BaseModel):
    transcriptId: str
    metrics: AnalysisMetrics = Field(default_factory=AnalysisMetrics)
    antiPatterns: list[AntiPattern] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    healthScore: int = 100
