"""Validators — stateless, per-kind checks producing typed findings."""

from __future__ import annotations

import ast
import importlib.util
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Iterable

from pydantic import BaseModel, ValidationError

from promptchain.models import Advisory, Finding, ValidationOutcome

logger = logging.getLogger(__name__)


class Validator(ABC):
    """Checks one artifact. Must not keep state between calls."""

    kind: str = "text"

    @abstractmethod
    def validate(self, artifact: str) -> ValidationOutcome:
        ...

    def _outcome(self, findings: list[Finding], warnings: list[Advisory] | None = None) -> ValidationOutcome:
        return ValidationOutcome(
            passed=not findings,
            findings=findings,
            warnings=warnings or [],
            kind=self.kind,
        )


# ---------------------------------------------------------------------------
# Python source
# ---------------------------------------------------------------------------


class PythonValidator(Validator):
    """Syntax, import, typing and convention checks for Python source."""

    kind = "python"

    def __init__(
        self,
        strict_typing: bool = False,
        check_imports: bool = True,
        allowed_modules: Iterable[str] = (),
        required_names: Iterable[str] = (),
    ):
        self.strict_typing = strict_typing
        self.check_imports = check_imports
        self.allowed_modules = set(allowed_modules)
        self.required_names = list(required_names)

    def validate(self, artifact: str) -> ValidationOutcome:
        try:
            tree = ast.parse(artifact or "")
        except SyntaxError as e:
            return self._outcome([
                Finding(
                    category="syntax",
                    message=f"Critical parsing error: {e.msg}",
                    line=e.lineno,
                    column=e.offset,
                    severity="critical",
                )
            ])

        findings: list[Finding] = []
        warnings: list[Advisory] = []

        if self.check_imports:
            findings.extend(self._check_imports(tree))
        type_findings, type_warnings = self._check_annotations(tree)
        findings.extend(type_findings)
        warnings.extend(type_warnings)
        findings.extend(self._check_exports(tree))
        warnings.extend(self._check_conventions(tree))

        return self._outcome(findings, warnings)

    def _check_imports(self, tree: ast.Module) -> list[Finding]:
        findings = []
        for node in ast.walk(tree):
            if isinstance(node, ast.Import):
                modules = [alias.name for alias in node.names]
            elif isinstance(node, ast.ImportFrom):
                if node.level:
                    continue  # relative
                if any(alias.name == "*" for alias in node.names):
                    findings.append(Finding(
                        category="import",
                        message=f"Star import from '{node.module}'",
                        line=node.lineno,
                        code="star-import",
                    ))
                modules = [node.module] if node.module else []
            else:
                continue

            for module in modules:
                top = module.split(".")[0]
                if top in self.allowed_modules or self._resolvable(top):
                    continue
                findings.append(Finding(
                    category="import",
                    message=f"Cannot resolve module '{module}'",
                    line=node.lineno,
                    code="unresolved-import",
                ))
        return findings

    @staticmethod
    def _resolvable(module: str) -> bool:
        try:
            return importlib.util.find_spec(module) is not None
        except (ImportError, ValueError):
            return False

    def _check_annotations(self, tree: ast.Module) -> tuple[list[Finding], list[Advisory]]:
        findings: list[Finding] = []
        warnings: list[Advisory] = []

        for node in ast.walk(tree):
            if not isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                continue
            if node.name.startswith("_"):
                continue

            args = node.args.posonlyargs + node.args.args + node.args.kwonlyargs
            missing = [a.arg for a in args if a.annotation is None and a.arg not in ("self", "cls")]
            problems = []
            if missing:
                problems.append(f"Function '{node.name}' has unannotated parameters: {', '.join(missing)}")
            if node.returns is None:
                problems.append(f"Function '{node.name}' has no return annotation")

            for message in problems:
                if self.strict_typing:
                    findings.append(Finding(category="type", message=message, line=node.lineno))
                else:
                    warnings.append(Advisory(
                        category="style",
                        message=message,
                        line=node.lineno,
                        suggestion="Add type annotations",
                    ))
        return findings, warnings

    def _check_exports(self, tree: ast.Module) -> list[Finding]:
        if not self.required_names:
            return []
        defined = set()
        for node in tree.body:
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
                defined.add(node.name)
            elif isinstance(node, ast.Assign):
                defined.update(t.id for t in node.targets if isinstance(t, ast.Name))
            elif isinstance(node, ast.AnnAssign) and isinstance(node.target, ast.Name):
                defined.add(node.target.id)
        return [
            Finding(category="export", message=f"Module does not define '{name}'")
            for name in self.required_names
            if name not in defined
        ]

    def _check_conventions(self, tree: ast.Module) -> list[Advisory]:
        warnings = []
        any_lines = set()
        for node in ast.walk(tree):
            if isinstance(node, ast.Call) and isinstance(node.func, ast.Name) and node.func.id == "print":
                warnings.append(Advisory(
                    category="best-practice",
                    message="Avoid print() in production code",
                    line=node.lineno,
                    suggestion="Use the logging module",
                ))
            elif _is_any(node) and node.lineno not in any_lines:
                any_lines.add(node.lineno)
                warnings.append(Advisory(
                    category="style",
                    message="Avoid typing.Any, use a precise type",
                    line=node.lineno,
                ))
        return warnings


def _is_any(node: ast.AST) -> bool:
    if isinstance(node, ast.Name):
        return node.id == "Any"
    if isinstance(node, ast.Attribute):
        return node.attr == "Any" and isinstance(node.value, ast.Name) and node.value.id == "typing"
    return False


# ---------------------------------------------------------------------------
# JSON
# ---------------------------------------------------------------------------


class JsonValidator(Validator):
    """Parses JSON and, when given a pydantic model, checks it against the model."""

    kind = "json"

    def __init__(self, model: type[BaseModel] | None = None):
        self.model = model

    def validate(self, artifact: str) -> ValidationOutcome:
        try:
            data = json.loads(artifact or "")
        except json.JSONDecodeError as e:
            return self._outcome([
                Finding(
                    category="syntax",
                    message=f"Invalid JSON: {e.msg}",
                    line=e.lineno,
                    column=e.colno,
                    severity="critical",
                )
            ])

        if self.model is None:
            return self._outcome([])

        try:
            self.model.model_validate(data)
        except ValidationError as e:
            findings = []
            for err in e.errors():
                location = ".".join(str(part) for part in err.get("loc", ()))
                message = f"{location}: {err['msg']}" if location else err["msg"]
                findings.append(Finding(category="schema", message=message, code=err.get("type")))
            return self._outcome(findings)
        return self._outcome([])


# ---------------------------------------------------------------------------
# Schema text / plain text
# ---------------------------------------------------------------------------


class SchemaTextValidator(Validator):
    """Checks a schema document for its required top-level sections."""

    kind = "schema"

    def __init__(self, required_sections: Iterable[str] = ()):
        self.required_sections = list(required_sections)

    def validate(self, artifact: str) -> ValidationOutcome:
        text = artifact or ""
        findings = [
            Finding(category="schema", message=f"Missing required section: {section}")
            for section in self.required_sections
            if not re.search(rf"^\s*{re.escape(section)}\b", text, re.MULTILINE)
        ]
        warnings = []
        if not re.search(r"^\s*model\s+\w+", text, re.MULTILINE):
            warnings.append(Advisory(category="best-practice", message="No models defined in schema"))
        return self._outcome(findings, warnings)


class TextValidator(Validator):
    kind = "text"

    def validate(self, artifact: str) -> ValidationOutcome:
        if not (artifact or "").strip():
            return self._outcome([Finding(category="lint", message="Output is empty")])
        return self._outcome([])


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ValidatorRegistry:
    """Maps artifact kinds to validators. Unknown kinds fall back to TextValidator."""

    def __init__(self, validators: dict[str, Validator] | None = None):
        self._validators: dict[str, Validator] = dict(validators or {})
        self._fallback = TextValidator()

    @classmethod
    def default(cls) -> ValidatorRegistry:
        python = PythonValidator()
        text = TextValidator()
        return cls({
            "python": python,
            "code": python,
            "json": JsonValidator(),
            "schema": SchemaTextValidator(),
            "text": text,
            "feature": text,
            "component": text,
        })

    def register(self, kind: str, validator: Validator):
        self._validators[kind] = validator

    def get(self, kind: str) -> Validator:
        return self._validators.get(kind, self._fallback)

    def kinds(self) -> list[str]:
        return sorted(self._validators)

    def validate(self, artifact: str | None, kind: str) -> ValidationOutcome:
        """Run the validator for `kind`. A crashing validator yields one critical finding."""
        validator = self.get(kind)
        try:
            outcome = validator.validate(artifact or "")
        except Exception as e:
            logger.error(f"Validator for kind '{kind}' crashed", exc_info=True)
            return ValidationOutcome(
                passed=False,
                findings=[Finding(
                    category="syntax",
                    message=f"Validator failed to analyze artifact: {e}",
                    severity="critical",
                )],
                kind=kind,
            )
        outcome.kind = kind
        return outcome
