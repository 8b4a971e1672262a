"""Project rule documents offered to the model through the ``get-project-rule`` tool."""

from __future__ import annotations

import fnmatch
import hashlib
import json
import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from llama_copilot.types import ChatMessage, TextPart, ToolDefinition

logger = logging.getLogger("llama_copilot.debug.rulesMatching")

RULES_TOOL_NAME = "get-project-rule"
FUZZY_MATCH_MAX_DISTANCE = 8
TOOL_PARAMS_MATCH_MAX_CHARS = 1024
RULE_EXTENSIONS = (".md", ".mdc")

_FRONTMATTER_RE = re.compile(r"^---\s*\n(.*?)\n---\s*\n(.*)$", re.DOTALL)
_ATTACHMENT_RE = re.compile(r"@[^\s:]+")

RULES_TOOL_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "rule": {
            "type": "string",
            "description": (
                "Comma-separated list of rule names to fetch "
                '(e.g., "rule:style-guidelines.mdc,rule:extra/example.md"). The "rule:" prefix is optional.'
            ),
        },
    },
    "required": ["rule"],
}


@dataclass(frozen=True)
class Rule:
    path: str
    content: str
    description: str | None = None
    globs: tuple[str, ...] = ()
    always_apply: bool | None = None

    @property
    def name(self) -> str:
        return Path(self.path).stem

    @property
    def title(self) -> str:
        return self.description or self.path


def normalize_rule_name(name: str) -> str:
    """Trim and strip the optional ``rule:`` prefix."""
    name = name.strip()
    if name.startswith("rule:"):
        name = name[len("rule:") :]
    return name.strip()


def parse_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    """Split ``---`` YAML frontmatter from a rule body."""
    match = _FRONTMATTER_RE.match(text)
    if not match:
        return {}, text
    try:
        meta = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as exc:
        logger.warning("Ignoring malformed rule frontmatter: %s", exc)
        meta = {}
    if not isinstance(meta, dict):
        meta = {}
    return meta, match.group(2)


def _coerce_globs(value: Any) -> tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        value = value.split(",")
    return tuple(str(g).strip().strip("'\"") for g in value if str(g).strip())


def load_rules(directory: str | Path) -> list[Rule]:
    """Read every rule file below ``directory``; a missing directory yields no rules."""
    root = Path(directory)
    if not root.is_dir():
        logger.debug("Rules directory not found: %s", root)
        return []

    rules: list[Rule] = []
    for path in sorted(root.rglob("*")):
        if not path.is_file() or path.suffix not in RULE_EXTENSIONS:
            continue
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to read rule file %s: %s", path, exc)
            continue
        meta: dict[str, Any] = {}
        body = text
        if path.suffix == ".mdc":
            meta, body = parse_frontmatter(text)
        always_apply = meta.get("alwaysApply")
        rules.append(
            Rule(
                path=path.relative_to(root).as_posix(),
                content=body.strip(),
                description=meta.get("description") or None,
                globs=_coerce_globs(meta.get("globs")),
                always_apply=always_apply if isinstance(always_apply, bool) else None,
            )
        )
    logger.debug("Loaded %d rules from %s", len(rules), root)
    return rules


def levenshtein_distance(a: str, b: str) -> int:
    """Case-insensitive edit distance."""
    a, b = a.lower(), b.lower()
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def find_closest_match(target: str, candidates: Iterable[str], max_distance: int) -> str | None:
    closest: str | None = None
    best = max_distance + 1
    for candidate in candidates:
        distance = levenshtein_distance(target, candidate)
        if distance < best:
            best, closest = distance, candidate
    return closest


def matches_any_glob(text: str, globs: Sequence[str]) -> bool:
    path = text.replace("\\", "/")
    return any(fnmatch.fnmatchcase(path, glob.replace("\\", "/")) for glob in globs)


@dataclass
class RuleCatalog:
    """Loaded rules plus which of them each chat session may see."""

    rules: list[Rule] = field(default_factory=list)
    _sessions: dict[str, set[str]] = field(default_factory=dict)

    @classmethod
    def from_directory(cls, directory: str | Path) -> RuleCatalog:
        return cls(rules=load_rules(directory))

    def __len__(self) -> int:
        return len(self.rules)

    def find_rule(self, name: str) -> Rule | None:
        """Exact path or name match, then case-insensitive."""
        name = normalize_rule_name(name)
        for rule in self.rules:
            if name in (rule.path, rule.name):
                return rule
        lowered = name.lower()
        for rule in self.rules:
            if lowered in (rule.path.lower(), rule.name.lower()):
                return rule
        return None

    def find_rule_fuzzy(self, name: str, max_distance: int = FUZZY_MATCH_MAX_DISTANCE) -> Rule | None:
        rule = self.find_rule(name)
        if rule is not None:
            return rule
        closest = find_closest_match(normalize_rule_name(name), [r.path for r in self.rules], max_distance)
        return self.find_rule(closest) if closest else None

    def available_rules(self, messages: Sequence[ChatMessage], model_id: str) -> list[Rule]:
        """Match rules against the conversation and return those visible to its session."""
        session_id = _session_id(messages, model_id)
        if _starts_conversation(messages):
            self._sessions[session_id] = set()
        available = self._sessions.setdefault(session_id, set())

        for rule in self.rules:
            if not rule.globs:
                if rule.always_apply is not False:
                    available.add(rule.path)
                continue
            if self._mentions(rule, messages):
                available.add(rule.path)

        logger.debug("Session %s has %d available rules", session_id[:12], len(available))
        return [rule for rule in self.rules if rule.path in available]

    @staticmethod
    def _mentions(rule: Rule, messages: Sequence[ChatMessage]) -> bool:
        for message in messages:
            text = " ".join(_texts(message))
            for attachment in _ATTACHMENT_RE.findall(text):
                if matches_any_glob(attachment[1:], rule.globs):
                    return True
            if matches_any_glob(text, rule.globs):
                return True
            for call in message.tool_calls():
                params = json.dumps(call.input)[:TOOL_PARAMS_MATCH_MAX_CHARS]
                if matches_any_glob(params, rule.globs):
                    return True
        return False


def _texts(message: ChatMessage) -> list[str]:
    return [part.value for part in message.content if isinstance(part, TextPart)]


def _starts_conversation(messages: Sequence[ChatMessage]) -> bool:
    if not messages:
        return True
    last = messages[-1]
    return last.role == "user" and not last.tool_results()


def _session_id(messages: Sequence[ChatMessage], model_id: str) -> str:
    first_user = next((m for m in messages if m.role == "user"), None)
    text = first_user.text() if first_user is not None else ""
    return hashlib.sha256((text + model_id).encode("utf-8")).hexdigest()


def rules_tool_description(rules: Sequence[Rule]) -> str:
    if not rules:
        return ""
    listing = "\n".join(f"- [{rule.title}](rule:{rule.path})" for rule in rules)
    return f"The user made the following notes about files you are editing:\n{listing}"


def build_rules_tool(rules: Sequence[Rule]) -> ToolDefinition | None:
    """The reserved rule tool, or ``None`` if no rule is available."""
    description = rules_tool_description(rules)
    if not description:
        return None
    return ToolDefinition(name=RULES_TOOL_NAME, description=description, input_schema=RULES_TOOL_SCHEMA)


def resolve_and_format_rules(catalog: RuleCatalog, requested: str) -> tuple[str, list[str]]:
    """Resolve comma-separated rule names; unknown names become ``<empty file>`` sections."""
    names = [normalize_rule_name(name) for name in requested.split(",")]
    sections: list[str] = []
    for name in names:
        rule = catalog.find_rule_fuzzy(name)
        title, content = (rule.title, rule.content) if rule else (name, "<empty file>")
        sections.append(f"# {title}\n\n````\n{content}\n````")
    return "\n\n".join(sections), names


def assistant_text_for_rules(rule_names: Sequence[str]) -> str:
    """Synthetic assistant turn that asks for the fetched rules."""
    unique = list(dict.fromkeys(rule_names))
    if not unique:
        return "Please tell me about the project rules."
    if len(unique) == 1:
        return f"Please tell me about rule {unique[0]}."
    return f"Please tell me about rules {', '.join(unique[:-1])}, and {unique[-1]}."
