from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


class RateLimitSpec(BaseModel):
    """Call-rate metadata attached to a tool or grant."""

    max_per_minute: int | None = Field(default=None, ge=0)
    max_per_day: int | None = Field(default=None, ge=0)


class ToolGrant(BaseModel):
    """Binds a tool to a permission scope inside a skill."""

    tool_name: str
    tier: str | None = None
    rate_limit: RateLimitSpec | None = None
    scopes: List[str] = Field(default_factory=list)


class ToolManifestEntry(BaseModel):
    """Declarative tool metadata (no handler) listed in a capability set."""

    name: str
    description: str = ""
    category: str | None = None
    params_summary: List[str] = Field(default_factory=list)
    rate_limit: RateLimitSpec | None = None


class KnowledgeSpec(BaseModel):
    id: str
    name: str
    type: str = "static"
    description: str | None = None


class SkillSpec(BaseModel):
    """A high-level ability composed of tools and knowledge sources.

    ``tool_grants`` take precedence over the plain ``tools`` list when the
    gatekeeper looks up which skill owns a tool.
    """

    name: str
    description: str = ""
    tools: List[str] = Field(default_factory=list)
    tool_grants: List[ToolGrant] = Field(default_factory=list)
    knowledge: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    tier: str | None = None


class CapabilitySet(BaseModel):
    """Serializable description of what an agent identity may do."""

    model_config = ConfigDict(populate_by_name=True)

    skills: List[SkillSpec] = Field(default_factory=list)
    tool_manifest: List[ToolManifestEntry] = Field(default_factory=list, alias="tools")
    knowledge: List[KnowledgeSpec] = Field(default_factory=list)

    @classmethod
    def from_file(cls, path: Path | str) -> "CapabilitySet":
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls.model_validate(payload)

    def all_tags(self) -> List[str]:
        seen: set[str] = set()
        tags: List[str] = []
        for skill in self.skills:
            for tag in skill.tags:
                key = tag.lower()
                if key not in seen:
                    seen.add(key)
                    tags.append(tag)
        return tags

    def all_tool_names(self) -> List[str]:
        return [entry.name for entry in self.tool_manifest]

    def has_tool(self, name: str) -> bool:
        return any(entry.name == name for entry in self.tool_manifest)

    def find_skill_by_tool(self, tool_name: str) -> Optional[SkillSpec]:
        for skill in self.skills:
            if any(grant.tool_name == tool_name for grant in skill.tool_grants):
                return skill
            if tool_name in skill.tools:
                return skill
        return None

    def find_tool_grant(self, tool_name: str) -> tuple[Optional[ToolGrant], Optional[str]]:
        for skill in self.skills:
            for grant in skill.tool_grants:
                if grant.tool_name == tool_name:
                    return grant, skill.name
        return None, None


@dataclass(frozen=True)
class CapabilityDecision:
    """Result of checking one tool call against a capability set."""

    allowed: bool
    deny_reason: str | None = None
    grant: ToolGrant | None = None
    skill_name: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "deny_reason": self.deny_reason,
            "grant": self.grant.model_dump() if self.grant is not None else None,
            "skill_name": self.skill_name,
        }


def evaluate_capability(capabilities: CapabilitySet | None, tool_name: str) -> CapabilityDecision:
    """Decide whether ``tool_name`` may be invoked under ``capabilities``.

    A missing capability set, or one without a tool manifest, allows every
    tool.  Otherwise the tool must be listed in the manifest.  When a skill
    carries an explicit grant for the tool the decision reports the grant and
    the owning skill; tools referenced only by a skill's plain tool list are
    attributed to that skill without grant metadata.
    """

    if capabilities is None or not capabilities.tool_manifest:
        return CapabilityDecision(allowed=True)
    if not capabilities.has_tool(tool_name):
        return CapabilityDecision(
            allowed=False,
            deny_reason=f"tool not in capability manifest: {tool_name}",
        )
    grant, skill_name = capabilities.find_tool_grant(tool_name)
    if grant is not None:
        return CapabilityDecision(allowed=True, grant=grant, skill_name=skill_name)
    skill = capabilities.find_skill_by_tool(tool_name)
    if skill is not None:
        return CapabilityDecision(allowed=True, skill_name=skill.name)
    return CapabilityDecision(allowed=True)


@dataclass(slots=True)
class CapabilityGate:
    """Per-agent allow-list consulted before every tool handler runs."""

    capabilities: CapabilitySet | None = None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any] | None) -> "CapabilityGate":
        if payload is None:
            return cls()
        return cls(capabilities=CapabilitySet.model_validate(dict(payload)))

    @property
    def restricted(self) -> bool:
        return bool(self.capabilities is not None and self.capabilities.tool_manifest)

    def evaluate(self, tool_name: str) -> CapabilityDecision:
        return evaluate_capability(self.capabilities, tool_name)


__all__ = [
    "CapabilityDecision",
    "CapabilityGate",
    "CapabilitySet",
    "KnowledgeSpec",
    "RateLimitSpec",
    "SkillSpec",
    "ToolGrant",
    "ToolManifestEntry",
    "evaluate_capability",
]
