from __future__ import annotations

import logging
import math
from typing import Any, Mapping

from selfheal.core.fingerprint import (
    BoundingBox,
    ContextFeatures,
    ElementFingerprint,
    SemanticFeatures,
    StructuralFeatures,
    TextFeatures,
    VisualFeatures,
)
from selfheal.utils.scoring import (
    containment_similarity,
    jaccard,
    optional_similarity,
    string_list_similarity,
    string_similarity,
)

log = logging.getLogger(__name__)

DEFAULT_WEIGHTS: dict[str, float] = {
    "text": 0.35,
    "structure": 0.25,
    "visual": 0.20,
    "semantic": 0.10,
    "context": 0.10,
}

TEXT_WEIGHTS = {
    "content": 0.40,
    "visible_text": 0.30,
    "aria_label": 0.15,
    "placeholder": 0.10,
    "value": 0.05,
}

STRUCTURE_WEIGHTS = {
    "tag": 0.30,
    "attributes": 0.25,
    "class_list": 0.20,
    "hierarchy": 0.15,
    "interactive": 0.10,
}

VISUAL_WEIGHTS = {
    "position": 0.25,
    "size": 0.20,
    "visibility": 0.20,
    "style": 0.20,
    "z_index": 0.15,
}

VIEWPORT_DIAGONAL = math.hypot(1920, 1080)
VISIBILITY_MISMATCH_SCORE = 0.1

_FONT_WEIGHTS = {"normal": 400, "bold": 700, "lighter": 300, "bolder": 800}

_DIMENSIONS = {
    "text": "text",
    "structure": "structural",
    "visual": "visual",
    "semantic": "semantic",
    "context": "context",
}


def _weighted(scores: Mapping[str, float], weights: Mapping[str, float]) -> float:
    total = sum(weights[key] * scores[key] for key in weights if key in scores)
    weight = sum(weights[key] for key in weights if key in scores)
    return total / weight if weight else 0.0


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class FingerprintComparator:
    """Scores two fingerprints in [0, 1] across five feature dimensions."""

    def __init__(self, weights: Mapping[str, float] | None = None) -> None:
        self.weights = {**DEFAULT_WEIGHTS, **(weights or {})}

    def score(
        self,
        first: ElementFingerprint,
        second: ElementFingerprint,
        weights: Mapping[str, float] | None = None,
    ) -> float:
        active = {**self.weights, **(weights or {})}
        scorers = {
            "text": self.text_similarity,
            "structure": self.structural_similarity,
            "visual": self.visual_similarity,
            "semantic": self.semantic_similarity,
            "context": self.context_similarity,
        }
        total = 0.0
        total_weight = 0.0
        breakdown: dict[str, float] = {}
        for dimension, attribute in _DIMENSIONS.items():
            weight = active.get(dimension, 0.0)
            if weight <= 0:
                continue
            left = getattr(first, attribute, None)
            right = getattr(second, attribute, None)
            if left is None and right is None:
                continue
            if left is None or right is None:
                value = 0.0
            else:
                try:
                    value = _clamp(scorers[dimension](left, right))
                except (TypeError, ValueError, ZeroDivisionError) as exc:
                    log.debug("Similarity dimension %s degraded: %s", dimension, exc)
                    value = 0.0
            breakdown[dimension] = value
            total += value * weight
            total_weight += weight
        if not total_weight:
            return 1.0 if first == second else 0.0
        result = _clamp(total / total_weight)
        log.debug("Similarity calculated: %s total=%.3f", breakdown, result)
        return result

    def quick_score(self, first: ElementFingerprint, second: ElementFingerprint) -> float:
        text_score = containment_similarity(first.primary_text, second.primary_text)
        tag_score = 1.0 if first.tag == second.tag else 0.0
        visible_score = 1.0 if first.is_visible == second.is_visible else 0.0
        return text_score * 0.5 + tag_score * 0.3 + visible_score * 0.2

    @staticmethod
    def string_similarity(left: str | None, right: str | None) -> float:
        return string_similarity(left, right)

    def text_similarity(self, first: TextFeatures, second: TextFeatures) -> float:
        scores = {
            "content": string_similarity(first.content, second.content),
            "visible_text": string_similarity(first.visible_text, second.visible_text),
            "aria_label": optional_similarity(first.aria_label, second.aria_label),
            "placeholder": optional_similarity(first.placeholder, second.placeholder),
            "value": optional_similarity(first.value, second.value),
        }
        return _weighted(scores, TEXT_WEIGHTS)

    def structural_similarity(self, first: StructuralFeatures, second: StructuralFeatures) -> float:
        scores = {
            "tag": 1.0 if first.tag == second.tag else 0.0,
            "attributes": self._attribute_similarity(first.attributes, second.attributes),
            "class_list": jaccard(first.class_list, second.class_list),
            "hierarchy": self._hierarchy_similarity(first, second),
            "interactive": 1.0 if first.is_interactive == second.is_interactive else 0.0,
        }
        return _weighted(scores, STRUCTURE_WEIGHTS)

    def visual_similarity(self, first: VisualFeatures, second: VisualFeatures) -> float:
        if first.is_visible != second.is_visible:
            return VISIBILITY_MISMATCH_SCORE
        scores = {
            "visibility": 1.0,
            "position": self._position_similarity(first.bounding_box, second.bounding_box),
            "size": self._size_similarity(first.bounding_box, second.bounding_box),
            "style": self._style_similarity(first, second),
            "z_index": max(0.0, 1.0 - abs(first.z_index - second.z_index) / 100),
        }
        return _weighted(scores, VISUAL_WEIGHTS)

    def semantic_similarity(self, first: SemanticFeatures, second: SemanticFeatures) -> float:
        score = 0.0
        factors = 0.0
        for left, right in (
            (first.role, second.role),
            (first.is_landmark, second.is_landmark),
            (first.list_item, second.list_item),
            (first.table_cell, second.table_cell),
            (first.semantic_type, second.semantic_type),
        ):
            score += 1.0 if left == right else 0.0
            factors += 1.0
        if first.heading_level == second.heading_level:
            score += 1.0
        elif first.heading_level > 0 and second.heading_level > 0:
            score += 0.5
        factors += 1.0
        for left, right in ((first.is_required, second.is_required), (first.is_invalid, second.is_invalid)):
            score += 0.5 if left == right else 0.0
            factors += 0.5
        return score / factors

    def context_similarity(self, first: ContextFeatures, second: ContextFeatures) -> float:
        parts = [
            1.0 if first.parent_tag == second.parent_tag else 0.0,
            self._soft_text(first.parent_text, second.parent_text, missing=0.5),
            string_list_similarity(first.sibling_texts, second.sibling_texts),
            self._soft_text(first.nearby_heading, second.nearby_heading, missing=0.3),
            optional_similarity(first.label_text, second.label_text),
        ]
        if first.form_id == second.form_id:
            parts.append(1.0)
        elif first.form_id and second.form_id:
            parts.append(0.3)
        else:
            parts.append(0.0)
        if first.table_headers or second.table_headers:
            parts.append(string_list_similarity(first.table_headers, second.table_headers))
        return sum(parts) / len(parts)

    def differences(self, first: ElementFingerprint, second: ElementFingerprint) -> dict[str, Any]:
        """Per-dimension breakdown, used by debug logging and reports."""

        report: dict[str, Any] = {"overall": self.score(first, second)}
        if first.text and second.text:
            report["text"] = {
                "content_match": first.text.content == second.text.content,
                "content_similarity": string_similarity(first.text.content, second.text.content),
                "length_difference": abs(first.text.length - second.text.length),
            }
        if first.structural and second.structural:
            report["structural"] = {
                "same_tag": first.structural.tag == second.structural.tag,
                "attribute_overlap": self._attribute_similarity(
                    first.structural.attributes, second.structural.attributes
                ),
                "class_overlap": jaccard(first.structural.class_list, second.structural.class_list),
                "depth_difference": abs(first.structural.depth - second.structural.depth),
            }
        if first.visual and second.visual:
            report["visual"] = {
                "same_visibility": first.visual.is_visible == second.visual.is_visible,
                "position_difference": first.visual.bounding_box.distance_to(second.visual.bounding_box),
                "z_index_difference": abs(first.visual.z_index - second.visual.z_index),
            }
        if first.context and second.context:
            report["context"] = {
                "same_parent_tag": first.context.parent_tag == second.context.parent_tag,
                "same_form": first.context.form_id == second.context.form_id,
            }
        return report

    @staticmethod
    def _soft_text(left: str, right: str, missing: float) -> float:
        if left and right:
            return string_similarity(left, right)
        if not left and not right:
            return 1.0
        return missing

    @staticmethod
    def _attribute_similarity(first: Mapping[str, str], second: Mapping[str, str]) -> float:
        if not first and not second:
            return 1.0
        if not first or not second:
            return 0.0
        common = set(first) & set(second)
        key_score = len(common) / len(set(first) | set(second))
        if not common:
            return key_score / 2
        value_score = 0.0
        for key in common:
            if first[key] == second[key]:
                value_score += 1.0
            else:
                value_score += string_similarity(first[key], second[key]) * 0.5
        return (key_score + value_score / len(common)) / 2

    @staticmethod
    def _hierarchy_similarity(first: StructuralFeatures, second: StructuralFeatures) -> float:
        depth_score = max(0.0, 1.0 - abs(first.depth - second.depth) / 10)
        if not first.path and not second.path:
            return depth_score
        longest = max(len(first.path), len(second.path))
        prefix = 0
        for left, right in zip(first.path, second.path):
            if left != right:
                break
            prefix += 1
        return (depth_score + prefix / longest) / 2

    @staticmethod
    def _position_similarity(first: BoundingBox, second: BoundingBox) -> float:
        return max(0.0, 1.0 - first.distance_to(second) / VIEWPORT_DIAGONAL)

    @staticmethod
    def _size_similarity(first: BoundingBox, second: BoundingBox) -> float:
        if first.area == 0 and second.area == 0:
            return 1.0
        if first.area == 0 or second.area == 0:
            return 0.0
        area_ratio = min(first.area, second.area) / max(first.area, second.area)
        first_aspect = first.width / first.height
        second_aspect = second.width / second.height
        aspect_ratio = min(first_aspect, second_aspect) / max(first_aspect, second_aspect)
        return (area_ratio + aspect_ratio) / 2

    def _style_similarity(self, first: VisualFeatures, second: VisualFeatures) -> float:
        score = 0.0
        if first.font_size == second.font_size:
            score += 1.0
        else:
            left = _parse_pixels(first.font_size)
            right = _parse_pixels(second.font_size)
            score += min(left, right) / max(left, right)
        if first.font_weight == second.font_weight:
            score += 1.0
        else:
            diff = abs(_parse_font_weight(first.font_weight) - _parse_font_weight(second.font_weight))
            score += max(0.0, 1.0 - diff / 900)
        score += 1.0 if first.color == second.color else 0.5
        score += 1.0 if first.background_color == second.background_color else 0.5
        score += 0.5 if first.display == second.display else 0.0
        score += 0.5 if first.position == second.position else 0.0
        return score / 5.0


def _parse_pixels(value: str) -> float:
    digits = "".join(char for char in value if char.isdigit() or char == ".")
    try:
        parsed = float(digits)
    except ValueError:
        return 16.0
    return parsed or 16.0


def _parse_font_weight(value: str) -> float:
    if value in _FONT_WEIGHTS:
        return _FONT_WEIGHTS[value]
    try:
        return float(value)
    except ValueError:
        return 400.0
