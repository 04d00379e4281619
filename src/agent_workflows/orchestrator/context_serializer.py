"""XML task context handed to agents alongside their prompt."""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from collections.abc import Mapping
from typing import Any

from defusedxml import ElementTree as SafeET

from agent_workflows.orchestrator.models import AgentOutput

_INVALID_TAG_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def sanitize_tag_name(name: str) -> str:
    """Turn an arbitrary key into a valid XML element name."""

    tag = _INVALID_TAG_CHARS.sub("_", str(name).strip()) or "field"
    if not (tag[0].isalpha() or tag[0] == "_") or tag.lower().startswith("xml"):
        tag = f"_{tag}"
    return tag


def serialize_context(
    *,
    agent_tag: str,
    workflow_id: str,
    context: Mapping[str, Any],
    dependency_outputs: Mapping[str, AgentOutput],
    task_id: str | None = None,
) -> str:
    root = ET.Element("task_context")
    if task_id:
        ET.SubElement(root, "task_id").text = task_id
    ET.SubElement(root, "agent_type").text = agent_tag
    ET.SubElement(root, "workflow_id").text = workflow_id

    if context:
        _append_value(ET.SubElement(root, "project_context"), context)

    if dependency_outputs:
        deps = ET.SubElement(root, "dependency_outputs")
        for tag, output in dependency_outputs.items():
            _append_output(ET.SubElement(deps, f"{sanitize_tag_name(tag.lower())}_output"), output)

    ET.indent(root, space="  ")
    body = ET.tostring(root, encoding="unicode")
    return f'<?xml version="1.0" encoding="UTF-8"?>\n{body}'


def deserialize_context(document: str) -> dict[str, Any]:
    """Parse a serialized context back into plain dicts and lists."""

    text = document.strip()
    if text.startswith("<?xml"):
        text = text.split("?>", 1)[1]
    try:
        root = SafeET.fromstring(text)
    except SafeET.ParseError as error:
        raise ValueError(f"Invalid task context XML: {error}") from error

    result: dict[str, Any] = {}
    for field_name, key in (
        ("task_id", "task_id"),
        ("agent_type", "agent_tag"),
        ("workflow_id", "workflow_id"),
    ):
        element = root.find(field_name)
        if element is not None:
            result[key] = element.text or ""

    project = root.find("project_context")
    if project is not None:
        result["context"] = _read_value(project)

    deps = root.find("dependency_outputs")
    if deps is not None:
        outputs: dict[str, Any] = {}
        for child in deps:
            tag = child.tag.removesuffix("_output").upper()
            outputs[tag] = _read_value(child)
        result["dependency_outputs"] = outputs
    return result


def _append_output(parent: ET.Element, output: AgentOutput) -> None:
    if output.summary:
        ET.SubElement(parent, "summary").text = output.summary
    if output.artifacts:
        artifacts = ET.SubElement(parent, "artifacts")
        for artifact in output.artifacts:
            node = ET.SubElement(artifacts, "artifact")
            ET.SubElement(node, "name").text = artifact.name
            ET.SubElement(node, "type").text = artifact.type
            if artifact.path:
                ET.SubElement(node, "path").text = artifact.path
            if artifact.content:
                ET.SubElement(node, "content").text = artifact.content
    if output.next_steps:
        steps = ET.SubElement(parent, "next_steps")
        for step in output.next_steps:
            ET.SubElement(steps, "step").text = step
    if output.warnings:
        warnings = ET.SubElement(parent, "warnings")
        for warning in output.warnings:
            ET.SubElement(warnings, "warning").text = warning


def _append_value(parent: ET.Element, value: Any) -> None:
    if isinstance(value, Mapping):
        for key, item in value.items():
            if item is None:
                continue
            _append_value(ET.SubElement(parent, sanitize_tag_name(key)), item)
    elif isinstance(value, list | tuple | set):
        for item in value:
            _append_value(ET.SubElement(parent, "item"), item)
    elif isinstance(value, bool):
        parent.text = "true" if value else "false"
    else:
        parent.text = str(value)


def _read_value(element: ET.Element) -> Any:
    children = list(element)
    if not children:
        return (element.text or "").strip()
    if all(child.tag in {"item", "step", "warning", "artifact"} for child in children):
        return [_read_value(child) for child in children]
    return {child.tag: _read_value(child) for child in children}
