from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class BoundingBox(_Frozen):
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0

    @property
    def center(self) -> tuple[float, float]:
        return self.x + self.width / 2, self.y + self.height / 2

    @property
    def area(self) -> float:
        return self.width * self.height

    def distance_to(self, other: BoundingBox) -> float:
        (x1, y1), (x2, y2) = self.center, other.center
        return ((x1 - x2) ** 2 + (y1 - y2) ** 2) ** 0.5


class TextFeatures(_Frozen):
    content: str = ""
    visible_text: str = ""
    aria_label: str | None = None
    title: str | None = None
    placeholder: str | None = None
    value: str | None = None
    alt: str | None = None
    has_numbers: bool = False
    has_uppercase: bool = False
    has_special_chars: bool = False

    @property
    def length(self) -> int:
        return len(self.content)

    @property
    def words(self) -> int:
        return len(self.content.split())

    @property
    def primary(self) -> str:
        return self.content or self.visible_text or self.aria_label or self.value or ""


class VisualFeatures(_Frozen):
    is_visible: bool = True
    bounding_box: BoundingBox = Field(default_factory=BoundingBox)
    in_viewport: bool = True
    z_index: int = 0
    opacity: float = 1.0
    color: str = ""
    background_color: str = ""
    font_size: str = ""
    font_weight: str = ""
    display: str = ""
    position: str = ""
    visual_weight: float = 0.0


class StructuralFeatures(_Frozen):
    tag: str = ""
    attributes: dict[str, str] = Field(default_factory=dict)
    class_list: list[str] = Field(default_factory=list)
    element_id: str = ""
    is_interactive: bool = False
    child_count: int = 0
    child_tags: list[str] = Field(default_factory=list)
    depth: int = 0
    path: list[str] = Field(default_factory=list)
    sibling_index: int = 0
    sibling_count: int = 0
    form_element: bool = False
    input_type: str | None = None
    role: str | None = None


class SemanticFeatures(_Frozen):
    role: str = ""
    is_landmark: bool = False
    heading_level: int = 0
    list_item: bool = False
    table_cell: bool = False
    semantic_type: str = ""
    is_required: bool = False
    is_invalid: bool = False


class ContextFeatures(_Frozen):
    parent_tag: str = ""
    parent_text: str = ""
    sibling_texts: list[str] = Field(default_factory=list)
    nearby_heading: str = ""
    label_text: str = ""
    form_id: str = ""
    table_headers: list[str] = Field(default_factory=list)


class ElementFingerprint(_Frozen):
    """Snapshot of one element, compared against others but never mutated."""

    text: TextFeatures | None = None
    visual: VisualFeatures | None = None
    structural: StructuralFeatures | None = None
    semantic: SemanticFeatures | None = None
    context: ContextFeatures | None = None
    captured_at: str | None = None

    @property
    def tag(self) -> str:
        return self.structural.tag if self.structural else ""

    @property
    def attributes(self) -> dict[str, str]:
        return dict(self.structural.attributes) if self.structural else {}

    @property
    def primary_text(self) -> str:
        return self.text.primary if self.text else ""

    @property
    def bounding_box(self) -> BoundingBox | None:
        return self.visual.bounding_box if self.visual else None

    @property
    def is_visible(self) -> bool:
        return self.visual.is_visible if self.visual else True
