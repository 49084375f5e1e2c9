"""Refinement engine — rewrites a prompt from validator findings and prior attempts."""

from __future__ import annotations

from collections import Counter

from promptchain.models import CorrectionAttempt, CorrectionHistory, Finding

CATEGORY_GUIDANCE = {
    "type": [
        "- Pay special attention to type annotations",
        "- Annotate every public function's parameters and return value",
    ],
    "import": [
        "- Ensure all imports come from modules that exist",
        "- Do not use star imports",
    ],
    "syntax": [
        "- Check for syntax errors carefully",
        "- Ensure proper bracket, parenthesis and indentation matching",
    ],
    "schema": [
        "- Match the required structure exactly",
        "- Include every required field with the right type",
    ],
}

DEFAULT_GUIDANCE = "Follow the conventions of the target format."

REFINEMENT_TEMPLATE = """You previously attempted to complete this task but the output had validation errors.

**Original Request:**
{original_prompt}

**Previous Attempts:**
{attempt_summary}

**Issues Found in Latest Attempt:**
{finding_summary}

**Specific Corrections Needed:**
{correction_instructions}
Now, generate a corrected version that addresses ALL the issues above. Requirements:

1. Fix all validation errors
2. Include all necessary imports
3. Follow best practices
4. Maintain the same functionality

{guidance}
{context}
Generate the complete, corrected output now."""


class RefinementEngine:
    """Stateless prompt rewriter used by the self-correcting loop."""

    def correction_instructions(self, findings: list[Finding], context: str | None = None) -> str:
        """Findings grouped by category, each group indexed from 1."""
        by_category: dict[str, list[Finding]] = {}
        for finding in findings:
            by_category.setdefault(finding.category, []).append(finding)

        lines = ["Fix the following issues:", ""]
        for category, items in by_category.items():
            lines.append(f"**{category.upper()} ERRORS:**")
            for idx, finding in enumerate(items, 1):
                suffix = f" (line {finding.line})" if finding.line else ""
                lines.append(f"{idx}. {finding.message}{suffix}")
            lines.append("")

        if context:
            lines.append(f"Context: {context}")
            lines.append("")
        return "\n".join(lines)

    def refine_prompt(
        self,
        original_prompt: str,
        findings: list[Finding],
        attempts: list[CorrectionAttempt],
        context: str | None = None,
    ) -> str:
        attempt_summary = "\n".join(
            f"Attempt {a.attempt_number}: {len(a.findings)} errors" for a in attempts
        ) or "None"
        finding_summary = "\n".join(
            f"{idx}. {f.label()}" for idx, f in enumerate(findings, 1)
        ) or "None"

        guidance_lines = []
        for category in dict.fromkeys(f.category for f in findings):
            guidance_lines.extend(CATEGORY_GUIDANCE.get(category, []))
        guidance = "\n".join(guidance_lines) if guidance_lines else DEFAULT_GUIDANCE

        return REFINEMENT_TEMPLATE.format(
            original_prompt=original_prompt,
            attempt_summary=attempt_summary,
            finding_summary=finding_summary,
            correction_instructions=self.correction_instructions(findings),
            guidance=guidance,
            context=f"\n**Additional Context:**\n{context}\n" if context else "",
        )

    def escalation_reason(self, attempts: list[CorrectionAttempt]) -> str:
        last = attempts[-1] if attempts else None
        counts = Counter(f.category for f in (last.findings if last else []))

        lines = [f"Failed after {len(attempts)} automatic refinement attempts.", "", "Persistent issues:"]
        for category, count in counts.items():
            lines.append(f"- {count} {category} error(s)")
        lines += [
            "",
            "Automatic refinement could not resolve these issues.",
            "Human review is required to:",
            "1. Clarify requirements if ambiguous",
            "2. Provide additional context or constraints",
            "3. Manually fix complex errors",
        ]
        return "\n".join(lines)

    def analyze_attempts(self, attempts: list[CorrectionAttempt]) -> dict:
        """Most common category, error reduction from first to last attempt, and stagnation."""
        if not attempts:
            return {"most_common_category": "unknown", "improvement_rate": 0.0, "stagnant": True}

        counts = Counter(f.category for a in attempts for f in a.findings)
        most_common = counts.most_common(1)[0][0] if counts else "unknown"

        first = len(attempts[0].findings)
        last = len(attempts[-1].findings)
        improvement = (first - last) / first if first > 0 else 0.0
        stagnant = len(attempts) >= 2 and len(attempts[-1].findings) == len(attempts[-2].findings)

        return {"most_common_category": most_common, "improvement_rate": improvement, "stagnant": stagnant}

    def escalation_report(self, history: CorrectionHistory) -> str:
        lines = [
            "# Task Escalation Report",
            "",
            f"**Task ID**: {history.task_id}",
            f"**Total Attempts**: {history.total_attempts}",
            f"**Status**: {history.disposition}",
            "",
            "## Attempt History",
        ]
        for attempt in history.attempts:
            lines.append(f"### Attempt {attempt.attempt_number}")
            lines.append(f"- **Successful**: {'Yes' if attempt.successful else 'No'}")
            lines.append(f"- **Execution Time**: {attempt.duration_ms}ms")
            if not attempt.successful:
                if attempt.validation is None:
                    lines.append(f"- **Error**: {attempt.error_type or 'transport'} failure")
                else:
                    lines.append("- **Errors**:")
                    for finding in attempt.findings:
                        lines.append(f"  - {finding.label()}")
            if attempt.correction_applied:
                lines.append(f"- **Correction Applied**: {attempt.correction_applied}")
            lines.append("")

        lines += [
            "## Recommendation",
            "Manual intervention required. Please review the errors above and:",
            "1. Clarify requirements if ambiguous",
            "2. Provide additional constraints or context",
            "3. Fix errors that cannot be resolved automatically",
        ]
        return "\n".join(lines)
