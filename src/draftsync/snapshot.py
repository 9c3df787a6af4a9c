# /src/draftsync/snapshot.py
# ProjectSnapshot data model and schema definition

import html
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

PHASE_NAMES = ("write", "edit")
CHAT_HISTORY_KEY = "chat_history"

_TAG_RE = re.compile(r"<[^>]+>")
_BLOCK_TAG_RE = re.compile(r"</(p|div|li|h[1-6])>|<br\s*/?>", re.IGNORECASE)


def utc_now_iso() -> str:
    """Return current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def html_to_text(value: str) -> str:
    """Strip editor markup down to plain text."""
    if not value:
        return ""
    text = _BLOCK_TAG_RE.sub(" ", value)
    text = _TAG_RE.sub("", text)
    return html.unescape(text)


def count_words(content: str) -> int:
    text = html_to_text(content).strip()
    if not text:
        return 0
    return len(text.split())


class IdeaLocation(str, Enum):
    """Where an idea item lives on the planning board."""
    UNPLACED = "unplaced"
    PLACED_IN_SECTION = "placed-in-section"

    @classmethod
    def parse(cls, value: Any) -> "IdeaLocation":
        # Older saves used "brainstorm" for the free pool and "section"/"outline"
        if value in (cls.PLACED_IN_SECTION, cls.PLACED_IN_SECTION.value, "section", "outline"):
            return cls.PLACED_IN_SECTION
        return cls.UNPLACED


@dataclass
class PhaseDocument:
    """One independently edited document stage."""
    content: str = ""
    word_count: int = 0

    @classmethod
    def from_content(cls, content: str) -> "PhaseDocument":
        return cls(content=content or "", word_count=count_words(content or ""))

    def to_dict(self) -> Dict[str, Any]:
        return {"content": self.content, "word_count": self.word_count}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PhaseDocument":
        data = data or {}
        # word_count is derived, never trusted from the payload
        return cls.from_content(data.get("content") or "")


@dataclass
class Section:
    id: str
    title: str = ""
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "title": self.title, "description": self.description}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Section":
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "",
            description=data.get("description") or "",
        )


@dataclass
class IdeaItem:
    id: str
    content: str
    location: IdeaLocation = IdeaLocation.UNPLACED
    section_id: Optional[str] = None
    ai_generated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "location": self.location.value,
            "section_id": self.section_id,
            "ai_generated": self.ai_generated,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IdeaItem":
        section_id = data.get("section_id", data.get("sectionId"))
        return cls(
            id=str(data["id"]),
            content=data.get("content") or "",
            location=IdeaLocation.parse(data.get("location")),
            section_id=str(section_id) if section_id not in (None, "") else None,
            ai_generated=bool(data.get("ai_generated", data.get("aiGenerated", False))),
        )


@dataclass
class PlanDocument:
    """Planning board: idea items, outline sections and their order."""
    ideas: List[IdeaItem] = field(default_factory=list)
    sections: List[Section] = field(default_factory=list)
    section_order: List[str] = field(default_factory=list)

    def section_ids(self) -> set:
        return {section.id for section in self.sections}

    def normalize_placement(self) -> int:
        """Demote ideas that point at a missing section to unplaced.

        Returns the number of ideas demoted.
        """
        known = self.section_ids()
        demoted = 0
        for idea in self.ideas:
            if idea.location is IdeaLocation.PLACED_IN_SECTION and idea.section_id not in known:
                idea.location = IdeaLocation.UNPLACED
                idea.section_id = None
                demoted += 1
        return demoted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ideas": [idea.to_dict() for idea in self.ideas],
            "sections": [section.to_dict() for section in self.sections],
            "section_order": list(self.section_order),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PlanDocument":
        data = data or {}
        raw_ideas = data.get("ideas") or []
        if isinstance(raw_ideas, dict):
            raw_ideas = list(raw_ideas.values())
        raw_sections = data.get("sections", data.get("outline")) or []
        plan = cls(
            ideas=[IdeaItem.from_dict(i) for i in raw_ideas if isinstance(i, dict) and "id" in i],
            sections=[Section.from_dict(s) for s in raw_sections if isinstance(s, dict) and "id" in s],
            section_order=[str(s) for s in data.get("section_order", data.get("sectionOrder")) or []],
        )
        plan.normalize_placement()
        return plan


@dataclass
class ProjectMetadata:
    title: str = ""
    description: str = ""
    current_tab: str = "plan"
    goal: str = ""
    instructor_instructions: str = ""
    created: Optional[str] = None
    modified: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    _FIELDS = ("title", "description", "current_tab", "goal",
               "instructor_instructions", "created", "modified")
    _ALIASES = {"currentTab": "current_tab", "instructorInstructions": "instructor_instructions"}

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        for name in self._FIELDS:
            data[name] = getattr(self, name)
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ProjectMetadata":
        values: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}
        for key, value in (data or {}).items():
            key = cls._ALIASES.get(key, key)
            if key in cls._FIELDS:
                values[key] = value
            else:
                extra[key] = value
        return cls(extra=extra, **values)


@dataclass
class ProjectSnapshot:
    """The full mutable project document.

    Phase documents, the planning board and the chat projection live side
    by side. Unknown top-level keys are carried in ``extra`` so that a
    round trip through the model never loses data the server added.
    """
    metadata: ProjectMetadata = field(default_factory=ProjectMetadata)
    phases: Dict[str, PhaseDocument] = field(
        default_factory=lambda: {name: PhaseDocument() for name in PHASE_NAMES}
    )
    plan: PlanDocument = field(default_factory=PlanDocument)
    chat_history: List[Dict[str, Any]] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(cls, instructor_instructions: str = "") -> "ProjectSnapshot":
        """Create a blank project stamped with the current time."""
        now = utc_now_iso()
        return cls(metadata=ProjectMetadata(
            current_tab="plan",
            instructor_instructions=instructor_instructions,
            created=now,
            modified=now,
        ))

    def phase(self, name: str) -> PhaseDocument:
        return self.phases.setdefault(name, PhaseDocument())

    def remap_ids(self, mappings: Dict[str, Any]) -> int:
        """Replace transient client ids with server-assigned ones.

        Applies to idea ids, section ids, idea section references and the
        section order. Returns the number of replacements made.
        """
        if not mappings:
            return 0
        table = {str(k): str(v) for k, v in mappings.items()}
        replaced = 0
        for idea in self.plan.ideas:
            if idea.id in table:
                idea.id = table[idea.id]
                replaced += 1
            if idea.section_id in table:
                idea.section_id = table[idea.section_id]
                replaced += 1
        for section in self.plan.sections:
            if section.id in table:
                section.id = table[section.id]
                replaced += 1
        order = []
        for section_id in self.plan.section_order:
            if section_id in table:
                replaced += 1
            order.append(table.get(section_id, section_id))
        self.plan.section_order = order
        return replaced

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data["metadata"] = self.metadata.to_dict()
        for name, document in self.phases.items():
            data[name] = document.to_dict()
        data["plan"] = self.plan.to_dict()
        data[CHAT_HISTORY_KEY] = [dict(m) for m in self.chat_history]
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ProjectSnapshot":
        data = dict(data or {})
        metadata = ProjectMetadata.from_dict(data.pop("metadata", None))
        phases = {name: PhaseDocument.from_dict(data.pop(name, None)) for name in PHASE_NAMES}
        plan = PlanDocument.from_dict(data.pop("plan", None))
        history = data.pop(CHAT_HISTORY_KEY, None)
        legacy_history = data.pop("chatHistory", None)
        if history is None:
            history = legacy_history
        return cls(
            metadata=metadata,
            phases=phases,
            plan=plan,
            chat_history=[dict(m) for m in history or [] if isinstance(m, dict)],
            extra=data,
        )
