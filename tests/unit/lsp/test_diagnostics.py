"""Tests for diagnostics presentation config."""

from __future__ import annotations

import pytest

from lsp_orchestrator.lsp.diagnostics import (
    NERD_FONT_SIGNS,
    Diagnostic,
    DiagnosticsConfig,
    DiagnosticSeverity,
)
from lsp_orchestrator.lsp.errors import ConfigurationError


def _diag(message: str, severity: int, line: int = 0, column: int = 0, source: str = "rustc") -> Diagnostic:
    return Diagnostic(message=message, severity=severity, line=line, column=column, source=source)


def test_defaults() -> None:
    config = DiagnosticsConfig.from_settings()

    assert config.severity_sort is True
    assert config.float_border == "rounded"
    assert config.float_source == "if_many"
    assert config.underline_severities == frozenset({DiagnosticSeverity.ERROR})
    assert config.virtual_text_source == "if_many"
    assert config.virtual_text_spacing == 2
    assert config.sign_for(DiagnosticSeverity.ERROR) == ""


def test_nerd_font_signs() -> None:
    config = DiagnosticsConfig.from_settings(have_nerd_font=True)

    for severity in DiagnosticSeverity:
        assert config.sign_for(severity) == NERD_FONT_SIGNS[severity]


def test_overrides() -> None:
    config = DiagnosticsConfig.from_settings(
        False,
        {"signs": {"warning": "W"}, "underline": ["error", "warn"], "virtual_text_spacing": 4},
    )

    assert config.sign_for(2) == "W"
    assert config.should_underline(_diag("x", DiagnosticSeverity.WARN))
    assert not config.should_underline(_diag("x", DiagnosticSeverity.HINT))
    assert config.virtual_text_spacing == 4


def test_unknown_options_rejected() -> None:
    with pytest.raises(ConfigurationError, match="virtual_lines"):
        DiagnosticsConfig.from_settings(False, {"virtual_lines": True})

    with pytest.raises(ConfigurationError):
        DiagnosticsConfig.from_settings(False, {"float_source": "sometimes"})

    with pytest.raises(ConfigurationError):
        DiagnosticSeverity.parse("fatal")


def test_underline_errors_only() -> None:
    config = DiagnosticsConfig()

    assert config.should_underline(_diag("bad", DiagnosticSeverity.ERROR))
    assert not config.should_underline(_diag("meh", DiagnosticSeverity.WARN))


def test_format_virtual_text_is_message() -> None:
    assert DiagnosticsConfig().format_virtual_text(_diag("unused import", 2)) == "unused import"


def test_render_line_sorts_by_severity_and_dedupes() -> None:
    config = DiagnosticsConfig()
    line = config.render_line(
        [
            _diag("unused variable `x`", DiagnosticSeverity.HINT, column=4),
            _diag("mismatched types", DiagnosticSeverity.ERROR, column=8),
            _diag("unused variable `x`", DiagnosticSeverity.WARN, column=4),
        ]
    )

    assert line == "  mismatched types  unused variable `x`"


def test_render_line_shows_source_only_with_several_sources() -> None:
    config = DiagnosticsConfig()

    single = config.render_line([_diag("a", 1), _diag("b", 2)])
    many = config.render_line([_diag("a", 1, source="rustc"), _diag("b", 2, source="clippy")])

    assert single == "  a  b"
    assert many == "  rustc: a  clippy: b"


def test_render_line_with_signs() -> None:
    config = DiagnosticsConfig(signs={DiagnosticSeverity.ERROR: "E ", DiagnosticSeverity.WARN: "W "})

    assert config.render_line([_diag("w", 2), _diag("e", 1)]) == "  E e  W w"
    assert config.render_line([]) == ""


def test_render_groups_by_line() -> None:
    config = DiagnosticsConfig()

    rendered = config.render([_diag("later", 1, line=5), _diag("first", 2, line=1)])

    assert rendered == {1: "  first", 5: "  later"}


def test_sort_by_severity_within_line() -> None:
    config = DiagnosticsConfig()
    ordered = config.sort([_diag("hint", 4, column=0), _diag("error", 1, column=9)])

    assert [d.message for d in ordered] == ["error", "hint"]


def test_diagnostic_from_lsp() -> None:
    diagnostic = Diagnostic.from_lsp(
        {
            "range": {"start": {"line": 3, "character": 1}, "end": {"line": 3, "character": 4}},
            "severity": 2,
            "message": "unused",
            "source": "rustc",
            "code": 1234,
        }
    )

    assert diagnostic.line == 3
    assert diagnostic.column == 1
    assert diagnostic.code == "1234"
    assert diagnostic.to_dict()["source"] == "rustc"
