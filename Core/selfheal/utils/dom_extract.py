from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import Any

from selfheal.core.fingerprint import (
    BoundingBox,
    ContextFeatures,
    ElementFingerprint,
    SemanticFeatures,
    StructuralFeatures,
    TextFeatures,
    VisualFeatures,
)
from selfheal.core.metadata import ElementDescription, PathStep

_ATTRIBUTES_JS = r"""
const attributesOf = (node) => Array.from(node.attributes).reduce((acc, attr) => {
  acc[attr.name] = attr.value;
  return acc;
}, {});
"""

DESCRIBE_ELEMENT_SCRIPT = _ATTRIBUTES_JS + r"""
const node = arguments[0];
const path = [];
for (let current = node; current && current.nodeType === 1; current = current.parentElement) {
  const parent = current.parentElement;
  const siblings = parent ? Array.from(parent.children) : [current];
  const sameTag = siblings.filter((item) => item.tagName === current.tagName);
  path.unshift({
    tag: current.tagName.toLowerCase(),
    attributes: attributesOf(current),
    position: sameTag.indexOf(current) + 1,
    same_tag_count: sameTag.length,
    nth_child: siblings.indexOf(current) + 1,
    sibling_count: siblings.length,
  });
}
const rect = node.getBoundingClientRect();
return {
  tag: node.tagName.toLowerCase(),
  attributes: attributesOf(node),
  text: (node.innerText || node.textContent || "").trim().slice(0, 500),
  path: path,
  rect: {x: rect.x, y: rect.y, width: rect.width, height: rect.height},
};
"""

FINGERPRINT_SCRIPT = _ATTRIBUTES_JS + r"""
const node = arguments[0];
const rect = node.getBoundingClientRect();
const style = window.getComputedStyle(node);
const parent = node.parentElement;
const siblings = parent ? Array.from(parent.children) : [node];
const ownText = (item) => (item ? (item.innerText || item.textContent || "").trim().slice(0, 200) : "");
const path = [];
for (let current = node; current && current.nodeType === 1; current = current.parentElement) {
  const classes = Array.from(current.classList);
  path.unshift([current.tagName.toLowerCase()].concat(classes).join("."));
}
const index = siblings.indexOf(node);
const siblingTexts = [ownText(siblings[index - 1]), ownText(siblings[index + 1])];
let heading = "";
for (let current = node; current && !heading; current = current.parentElement) {
  for (let sibling = current.previousElementSibling; sibling; sibling = sibling.previousElementSibling) {
    if (/^H[1-6]$/.test(sibling.tagName)) {
      heading = ownText(sibling);
      break;
    }
  }
}
let label = "";
if (node.id) {
  const explicit = document.querySelector(`label[for="${CSS.escape(node.id)}"]`);
  if (explicit) label = ownText(explicit);
}
if (!label && node.closest("label")) label = ownText(node.closest("label"));
const table = node.closest("table");
const form = node.closest("form");
const headingMatch = /^H([1-6])$/.exec(node.tagName);
return {
  tag: node.tagName.toLowerCase(),
  attributes: attributesOf(node),
  content: (node.textContent || "").trim().slice(0, 500),
  visible_text: (node.innerText || "").trim().slice(0, 500),
  value: node.value === undefined || node.value === null ? null : String(node.value),
  rect: {x: rect.x, y: rect.y, width: rect.width, height: rect.height},
  is_visible: rect.width > 0 && rect.height > 0 && style.visibility !== "hidden" && style.display !== "none",
  in_viewport: rect.bottom > 0 && rect.right > 0 && rect.top < window.innerHeight && rect.left < window.innerWidth,
  style: {
    z_index: style.zIndex,
    opacity: style.opacity,
    color: style.color,
    background_color: style.backgroundColor,
    font_size: style.fontSize,
    font_weight: style.fontWeight,
    display: style.display,
    position: style.position,
  },
  child_tags: Array.from(node.children).map((child) => child.tagName.toLowerCase()),
  path: path,
  sibling_index: index,
  sibling_count: siblings.length,
  in_form: Boolean(form),
  form_id: form ? form.id : "",
  heading_level: headingMatch ? Number(headingMatch[1]) : 0,
  list_item: node.tagName === "LI" || Boolean(node.closest("li")),
  table_cell: ["TD", "TH"].includes(node.tagName),
  table_headers: table ? Array.from(table.querySelectorAll("th")).map((cell) => ownText(cell)).slice(0, 20) : [],
  parent_tag: parent ? parent.tagName.toLowerCase() : "",
  parent_text: parent ? ownText(parent) : "",
  sibling_texts: siblingTexts,
  nearby_heading: heading,
  label_text: label,
};
"""

ELEMENTS_WITH_TEXT_SCRIPT = r"""
const fragment = arguments[0].toLowerCase();
const walker = document.createTreeWalker(document.body, NodeFilter.SHOW_TEXT);
const found = [];
for (let text = walker.nextNode(); text; text = walker.nextNode()) {
  const owner = text.parentElement;
  if (!owner || found.includes(owner)) continue;
  if (["SCRIPT", "STYLE", "NOSCRIPT"].includes(owner.tagName)) continue;
  if (text.nodeValue.toLowerCase().includes(fragment)) found.push(owner);
}
return found;
"""

INTERACTIVE_TAGS = frozenset({"a", "button", "input", "select", "textarea", "details", "summary"})
LANDMARK_ROLES = frozenset({"banner", "navigation", "main", "complementary", "contentinfo", "search", "form", "region"})
LANDMARK_TAGS = {"header": "banner", "nav": "navigation", "main": "main", "aside": "complementary", "footer": "contentinfo"}
IMPLICIT_ROLES = {
    "a": "link",
    "button": "button",
    "select": "combobox",
    "textarea": "textbox",
    "img": "img",
    "ul": "list",
    "ol": "list",
    "li": "listitem",
    "table": "table",
    "form": "form",
    **LANDMARK_TAGS,
}
_INPUT_ROLES = {"checkbox": "checkbox", "radio": "radio", "submit": "button", "button": "button", "reset": "button"}
_SPECIAL_CHARS = re.compile(r"[^\w\s]")


def _bounding_box(rect: dict[str, Any] | None) -> BoundingBox:
    rect = rect or {}
    return BoundingBox(
        x=rect.get("x") or 0.0,
        y=rect.get("y") or 0.0,
        width=rect.get("width") or 0.0,
        height=rect.get("height") or 0.0,
    )


def build_description(payload: dict[str, Any]) -> ElementDescription:
    return ElementDescription(
        tag=payload.get("tag", ""),
        attributes=payload.get("attributes") or {},
        text=payload.get("text", ""),
        path=[PathStep(**step) for step in payload.get("path") or []],
        bounding_box=_bounding_box(payload.get("rect")),
    )


def implicit_role(tag: str, attributes: dict[str, str]) -> str:
    if attributes.get("role"):
        return attributes["role"]
    if tag == "input":
        return _INPUT_ROLES.get(attributes.get("type", "text").lower(), "textbox")
    return IMPLICIT_ROLES.get(tag, "")


def _number(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def build_fingerprint(payload: dict[str, Any]) -> ElementFingerprint:
    """Turns the raw FINGERPRINT_SCRIPT result into an ElementFingerprint."""

    tag = payload.get("tag", "")
    attributes = {str(name): str(value) for name, value in (payload.get("attributes") or {}).items()}
    content = " ".join((payload.get("content") or "").split())
    style = payload.get("style") or {}
    box = _bounding_box(payload.get("rect"))
    role = implicit_role(tag, attributes)
    classes = attributes.get("class", "").split()
    font_size = _number(str(style.get("font_size", "")).removesuffix("px"), 16.0)
    opacity = _number(style.get("opacity"), 1.0)

    return ElementFingerprint(
        text=TextFeatures(
            content=content,
            visible_text=" ".join((payload.get("visible_text") or "").split()),
            aria_label=attributes.get("aria-label"),
            title=attributes.get("title"),
            placeholder=attributes.get("placeholder"),
            value=payload.get("value"),
            alt=attributes.get("alt"),
            has_numbers=any(char.isdigit() for char in content),
            has_uppercase=any(char.isupper() for char in content),
            has_special_chars=bool(_SPECIAL_CHARS.search(content)),
        ),
        visual=VisualFeatures(
            is_visible=bool(payload.get("is_visible", True)),
            bounding_box=box,
            in_viewport=bool(payload.get("in_viewport", True)),
            z_index=int(_number(style.get("z_index"), 0)),
            opacity=opacity,
            color=style.get("color", ""),
            background_color=style.get("background_color", ""),
            font_size=str(style.get("font_size", "")),
            font_weight=str(style.get("font_weight", "")),
            display=style.get("display", ""),
            position=style.get("position", ""),
            visual_weight=box.area * opacity * font_size / 16 / 10000,
        ),
        structural=StructuralFeatures(
            tag=tag,
            attributes=attributes,
            class_list=classes,
            element_id=attributes.get("id", ""),
            is_interactive=tag in INTERACTIVE_TAGS or "onclick" in attributes or role in {"button", "link"},
            child_count=len(payload.get("child_tags") or []),
            child_tags=payload.get("child_tags") or [],
            depth=max(0, len(payload.get("path") or []) - 1),
            path=payload.get("path") or [],
            sibling_index=payload.get("sibling_index", 0),
            sibling_count=payload.get("sibling_count", 0),
            form_element=bool(payload.get("in_form")),
            input_type=attributes.get("type") if tag == "input" else None,
            role=role or None,
        ),
        semantic=SemanticFeatures(
            role=role,
            is_landmark=role in LANDMARK_ROLES,
            heading_level=payload.get("heading_level", 0),
            list_item=bool(payload.get("list_item")),
            table_cell=bool(payload.get("table_cell")),
            semantic_type=role or tag,
            is_required="required" in attributes or attributes.get("aria-required") == "true",
            is_invalid=attributes.get("aria-invalid") == "true",
        ),
        context=ContextFeatures(
            parent_tag=payload.get("parent_tag", ""),
            parent_text=" ".join((payload.get("parent_text") or "").split())[:200],
            sibling_texts=payload.get("sibling_texts") or [],
            nearby_heading=payload.get("nearby_heading", ""),
            label_text=payload.get("label_text", ""),
            form_id=payload.get("form_id", ""),
            table_headers=payload.get("table_headers") or [],
        ),
        captured_at=datetime.now(UTC).isoformat(),
    )
