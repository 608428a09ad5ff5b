"""Diagnostics model and the rendering preferences passed through to the editor."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional

from lsp_orchestrator.lsp.errors import ConfigurationError


class DiagnosticSeverity(IntEnum):
    ERROR = 1
    WARN = 2
    INFO = 3
    HINT = 4

    @classmethod
    def parse(cls, value: Any) -> "DiagnosticSeverity":
        if isinstance(value, DiagnosticSeverity):
            return value
        if isinstance(value, int):
            try:
                return cls(value)
            except ValueError:
                raise ConfigurationError(f"Unknown diagnostic severity: {value!r}") from None
        name = str(value).strip().upper()
        if name == "WARNING":
            name = "WARN"
        if name == "INFORMATION":
            name = "INFO"
        try:
            return cls[name]
        except KeyError:
            raise ConfigurationError(f"Unknown diagnostic severity: {value!r}") from None


@dataclass
class Diagnostic:
    """LSP diagnostic message."""
    message: str
    severity: int  # 1=Error, 2=Warning, 3=Info, 4=Hint
    line: int
    column: int
    source: Optional[str] = None
    code: Optional[str] = None

    @classmethod
    def from_lsp(cls, lsp_diagnostic: Dict[str, Any]) -> "Diagnostic":
        """Create from LSP diagnostic format."""
        return cls(
            message=lsp_diagnostic.get("message", ""),
            severity=lsp_diagnostic.get("severity", 1),
            line=lsp_diagnostic["range"]["start"]["line"],
            column=lsp_diagnostic["range"]["start"]["character"],
            source=lsp_diagnostic.get("source"),
            code=str(lsp_diagnostic.get("code")) if "code" in lsp_diagnostic else None
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        result = {
            "message": self.message,
            "severity": self.severity,
            "line": self.line,
            "column": self.column
        }
        if self.source:
            result["source"] = self.source
        if self.code:
            result["code"] = self.code
        return result


NERD_FONT_SIGNS: Mapping[DiagnosticSeverity, str] = MappingProxyType(
    {
        DiagnosticSeverity.ERROR: "󰅚 ",
        DiagnosticSeverity.WARN: "󰀪 ",
        DiagnosticSeverity.INFO: "󰋽 ",
        DiagnosticSeverity.HINT: "󰌶 ",
    }
)

_SOURCE_MODES = frozenset({"always", "if_many", "never"})


@dataclass(frozen=True)
class DiagnosticsConfig:
    """How diagnostics should be presented.

    The orchestrator does not draw anything; these preferences are handed to
    whatever renders diagnostics, and :meth:`render_line` produces the inline
    text for one line.
    """

    severity_sort: bool = True
    float_border: str = "rounded"
    float_source: str = "if_many"
    underline_severities: FrozenSet[DiagnosticSeverity] = frozenset({DiagnosticSeverity.ERROR})
    signs: Mapping[DiagnosticSeverity, str] = field(default_factory=dict)
    virtual_text_source: str = "if_many"
    virtual_text_spacing: int = 2

    def __post_init__(self) -> None:
        for name in ("float_source", "virtual_text_source"):
            if getattr(self, name) not in _SOURCE_MODES:
                raise ConfigurationError(f"{name} must be one of {sorted(_SOURCE_MODES)}")
        object.__setattr__(self, "signs", MappingProxyType(dict(self.signs)))
        object.__setattr__(self, "underline_severities", frozenset(self.underline_severities))

    @classmethod
    def from_settings(
        cls,
        have_nerd_font: bool = False,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> "DiagnosticsConfig":
        """Defaults, nerd-font signs when available, then user overrides."""
        overrides = dict(overrides or {})
        signs: Dict[DiagnosticSeverity, str] = dict(NERD_FONT_SIGNS) if have_nerd_font else {}
        for name, glyph in (overrides.pop("signs", None) or {}).items():
            signs[DiagnosticSeverity.parse(name)] = str(glyph)

        kwargs: Dict[str, Any] = {"signs": signs}
        if "underline" in overrides:
            kwargs["underline_severities"] = frozenset(
                DiagnosticSeverity.parse(item) for item in overrides.pop("underline")
            )
        for key in ("severity_sort", "float_border", "float_source", "virtual_text_source"):
            if key in overrides:
                kwargs[key] = overrides.pop(key)
        if "virtual_text_spacing" in overrides:
            kwargs["virtual_text_spacing"] = int(overrides.pop("virtual_text_spacing"))
        if overrides:
            raise ConfigurationError(
                f"Unknown diagnostics options: {', '.join(sorted(overrides))}"
            )
        return cls(**kwargs)

    def sign_for(self, severity: int) -> str:
        return self.signs.get(DiagnosticSeverity.parse(severity), "")

    def should_underline(self, diagnostic: Diagnostic) -> bool:
        return DiagnosticSeverity.parse(diagnostic.severity) in self.underline_severities

    def format_virtual_text(self, diagnostic: Diagnostic) -> str:
        return diagnostic.message

    def sort(self, diagnostics: Iterable[Diagnostic]) -> List[Diagnostic]:
        if self.severity_sort:
            return sorted(diagnostics, key=lambda d: (d.line, d.severity, d.column))
        return sorted(diagnostics, key=lambda d: (d.line, d.column))

    def _show_source(self, mode: str, diagnostics: List[Diagnostic]) -> bool:
        if mode == "always":
            return True
        if mode == "never":
            return False
        return len({d.source for d in diagnostics if d.source}) > 1

    def render_line(self, diagnostics: Iterable[Diagnostic]) -> str:
        """Inline text for diagnostics sharing one line.

        Identical messages reported at several severities collapse into the
        most severe one.
        """
        ordered = sorted(diagnostics, key=lambda d: (d.severity, d.column))
        if not ordered:
            return ""

        show_source = self._show_source(self.virtual_text_source, ordered)
        seen = set()
        parts = []
        for diagnostic in ordered:
            text = self.format_virtual_text(diagnostic)
            if text in seen:
                continue
            seen.add(text)
            if show_source and diagnostic.source:
                text = f"{diagnostic.source}: {text}"
            parts.append(f"{self.sign_for(diagnostic.severity)}{text}")

        return " " * self.virtual_text_spacing + "  ".join(parts)

    def render(self, diagnostics: Iterable[Diagnostic]) -> Dict[int, str]:
        """Inline text keyed by (0-indexed) line."""
        by_line: Dict[int, List[Diagnostic]] = {}
        for diagnostic in self.sort(diagnostics):
            by_line.setdefault(diagnostic.line, []).append(diagnostic)
        return {line: self.render_line(items) for line, items in sorted(by_line.items())}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity_sort": self.severity_sort,
            "float": {"border": self.float_border, "source": self.float_source},
            "underline": {"severity": sorted(s.name for s in self.underline_severities)},
            "signs": {s.name: glyph for s, glyph in sorted(self.signs.items())},
            "virtual_text": {
                "source": self.virtual_text_source,
                "spacing": self.virtual_text_spacing,
            },
        }


__all__ = ["Diagnostic", "DiagnosticSeverity", "DiagnosticsConfig", "NERD_FONT_SIGNS"]
