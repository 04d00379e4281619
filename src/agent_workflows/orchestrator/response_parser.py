"""Parse raw agent runner responses into structured ``AgentOutput``."""

from __future__ import annotations

import json
import re
from typing import Any

from agent_workflows.orchestrator.models import AgentOutput, Artifact, OutputMetadata

_SUMMARY = re.compile(
    r"^#*\s*(?:Summary|Overview|Result)[:.]?\s*(.+?)(?:\n\n|$)",
    re.IGNORECASE | re.MULTILINE | re.DOTALL,
)
_CODE_BLOCK = re.compile(
    r"```(\w+)?[ \t]*\n?(?:(?://|#)\s*file:\s*(.+?)\n)?(.*?)```",
    re.DOTALL,
)
_FILE_MENTION = re.compile(
    r"(created?|generated?|wrote|modified?|updated?)[:\s]+[`\"]?([^\s`\"]+\.[a-zA-Z]+)[`\"]?",
    re.IGNORECASE,
)
_WARNING = re.compile(r"(?:⚠️|\bwarning\b|\bcaution\b)[:.]?\s*(.+?)(?:\n|$)", re.IGNORECASE)
_NEXT_STEPS = re.compile(
    r"(?:next\s*steps?|recommendations?)[:.]?[ \t]*\n?(.*?)(?:\n\n|$)",
    re.IGNORECASE | re.DOTALL,
)
_LIST_MARKER = re.compile(r"^\s*(?:[-*]|\d+[.)])\s*")
_ERROR_WORDS = re.compile(r"\b(?:error|failed|exception|cannot|unable)\b", re.IGNORECASE)
_RECOVERY_WORDS = re.compile(r"\b(?:fixed|resolved|handled)\b", re.IGNORECASE)

ARTIFACT_TYPES: dict[str, str] = {
    "js": "code",
    "ts": "code",
    "jsx": "code",
    "tsx": "code",
    "py": "code",
    "java": "code",
    "kt": "code",
    "swift": "code",
    "dart": "code",
    "go": "code",
    "rs": "code",
    "json": "config",
    "yaml": "config",
    "yml": "config",
    "toml": "config",
    "xml": "config",
    "env": "config",
    "md": "documentation",
    "txt": "documentation",
    "rst": "documentation",
    "css": "style",
    "scss": "style",
    "less": "style",
    "sql": "schema",
    "prisma": "schema",
    "graphql": "schema",
}


def parse_agent_response(raw: Any) -> AgentOutput:
    """Accept a mapping, a JSON document, or free-form text."""

    if isinstance(raw, dict):
        return _normalize_payload(raw)
    text = str(raw or "")
    payload = _try_load_dict(text.strip())
    if payload is not None:
        return _normalize_payload(payload)
    return _parse_text(text)


def detect_artifact_type(path: str) -> str:
    name = path.rsplit("/", 1)[-1].lower()
    if ".test." in name or ".spec." in name or name.startswith("test_"):
        return "test"
    extension = name.rsplit(".", 1)[-1] if "." in name else ""
    return ARTIFACT_TYPES.get(extension, "file")


def validate_output(output: AgentOutput) -> list[str]:
    """Contract problems in a parsed output; empty when valid."""

    problems: list[str] = []
    if not output.summary.strip():
        problems.append("summary is empty")
    for index, artifact in enumerate(output.artifacts):
        if not artifact.content:
            problems.append(f"artifact {index} ({artifact.name}) has no content")
        if artifact.path is not None and (
            artifact.path.startswith("/") or ".." in artifact.path.split("/")
        ):
            problems.append(f"artifact {index} path escapes the repository: {artifact.path}")
    return problems


def _try_load_dict(raw: str) -> dict[str, Any] | None:
    if not raw.startswith("{"):
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def _normalize_payload(payload: dict[str, Any]) -> AgentOutput:
    metadata = payload.get("metadata") if isinstance(payload.get("metadata"), dict) else {}
    usage = payload.get("usage") if isinstance(payload.get("usage"), dict) else {}
    units = (
        metadata.get("resource_units")
        or metadata.get("tokensUsed")
        or payload.get("tokensUsed")
        or payload.get("tokens_used")
        or usage.get("total_tokens")
        or 0
    )
    execution_time = metadata.get("execution_time_ms") or metadata.get("executionTime") or 0
    success = payload.get("success")
    return AgentOutput(
        success=True if success is None else bool(success),
        summary=str(payload.get("summary") or payload.get("message") or payload.get("result") or ""),
        artifacts=[
            _normalize_artifact(item)
            for item in payload.get("artifacts") or payload.get("files") or []
            if isinstance(item, dict)
        ],
        metadata=OutputMetadata(
            resource_units=int(units),
            execution_time_ms=int(execution_time),
            files_created=list(
                metadata.get("files_created")
                or metadata.get("filesCreated")
                or payload.get("filesCreated")
                or [],
            ),
            files_modified=list(
                metadata.get("files_modified")
                or metadata.get("filesModified")
                or payload.get("filesModified")
                or [],
            ),
        ),
        next_steps=list(
            payload.get("next_steps")
            or payload.get("nextSteps")
            or payload.get("recommendations")
            or [],
        ),
        warnings=list(payload.get("warnings") or []),
    )


def _normalize_artifact(item: dict[str, Any]) -> Artifact:
    path = item.get("path") or item.get("filepath")
    name = item.get("name") or item.get("filename") or path or "unnamed"
    return Artifact(
        name=str(name),
        type=str(item.get("type") or detect_artifact_type(str(path or name))),
        content=str(item.get("content") or item.get("code") or item.get("data") or ""),
        path=str(path) if path else None,
    )


def _parse_text(text: str) -> AgentOutput:
    output = AgentOutput(success=True, summary=_extract_summary(text))

    for language, file_path, content in _CODE_BLOCK.findall(text):
        body = content.strip()
        if not body:
            continue
        path = file_path.strip() if file_path else None
        output.artifacts.append(
            Artifact(
                name=path or f"code-{len(output.artifacts) + 1}",
                type=language or "code",
                content=body,
                path=path,
            ),
        )
        if path:
            output.metadata.files_created.append(path)

    for verb, path in _FILE_MENTION.findall(text):
        if path in output.metadata.files_created or path in output.metadata.files_modified:
            continue
        if verb.lower().startswith(("creat", "generat", "wrote")):
            output.metadata.files_created.append(path)
        else:
            output.metadata.files_modified.append(path)

    output.warnings.extend(match.strip() for match in _WARNING.findall(text))

    steps_match = _NEXT_STEPS.search(text)
    if steps_match is not None:
        for line in steps_match.group(1).splitlines():
            step = _LIST_MARKER.sub("", line).strip()
            if step:
                output.next_steps.append(step)

    if _ERROR_WORDS.search(text) and not _RECOVERY_WORDS.search(text):
        output.success = False
    return output


def _extract_summary(text: str) -> str:
    match = _SUMMARY.search(text)
    if match is not None:
        return " ".join(match.group(1).split())
    for line in text.splitlines():
        if line.strip():
            return line.strip().lstrip("#").strip()
    return ""
