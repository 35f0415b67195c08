"""Document stage: render a Markdown report of the run."""

from ...models import ContextPatch, RunContext, StageId
from .base import Stage, tool_kind


def render_report(context: RunContext) -> str:
    data = context.data
    plan = data.get("plan") or {}
    lines = [
        f"# {tool_kind(context.tool_name).capitalize()} run {context.request_id}",
        "",
        f"**Summary:** {plan.get('summary', '(none)')}",
        f"**Risk:** {plan.get('risk', 'n/a')} | **Confidence:** {plan.get('confidence', 'n/a')}",
        "",
    ]

    if plan.get("steps"):
        lines.append("## Plan")
        lines.extend(f"{i}. {step}" for i, step in enumerate(plan["steps"], 1))
        lines.append("")

    facts = data.get("repo_facts") or []
    if facts:
        lines.append("## Project")
        lines.append(", ".join(facts))
        lines.append("")

    docs = data.get("documentation") or {}
    if docs:
        statuses = context.metadata.get("docs_cache", {})
        lines.append("## Documentation")
        lines.extend(f"- {fw} ({statuses.get(fw, 'live')})" for fw in docs)
        lines.append("")

    snippets = data.get("snippets") or {}
    if snippets:
        lines.append("## Files read")
        lines.extend(f"- `{path}`" for path in snippets)
        lines.append("")

    edits = data.get("edits") or []
    if edits:
        lines.append("## Edits")
        for edit in edits:
            state = "written" if edit.get("written") else "dry run"
            lines.append(
                f"- `{edit['path']}`: {edit['lines_changed']} lines, {edit['hunks']} hunks ({state})"
            )
        lines.append("")

    validation = data.get("validation") or []
    if validation:
        lines.append("## Validation")
        for outcome in validation:
            mark = "pass" if outcome["passed"] else "FAIL"
            detail = "; ".join(outcome.get("details", []))
            lines.append(f"- `{outcome['artifact']}`: {mark}" + (f" ({detail})" if detail else ""))
        lines.append("")

    if context.errors:
        lines.append("## Recovered errors")
        lines.extend(f"- {e.stage}: {e.message}" for e in context.errors)
        lines.append("")

    return "\n".join(lines).rstrip() + "\n"


class DocumentStage(Stage):
    stage_id = StageId.DOCUMENT

    async def execute(self, context: RunContext) -> ContextPatch:
        return ContextPatch(data={"report": render_report(context)})
