"""
Terraform-style output formatting for Escapement operations.

This module provides Terraform-like formatting for plan, apply, refresh and
state listings to give users familiar output patterns.
"""

import json
from typing import Any

from rich.console import Console
from rich.text import Text

from .errors import DriftError
from .models import (
    UNKNOWN,
    ActionOutcome,
    ActionStatus,
    ActionType,
    ApplyReport,
    Plan,
    PlanAction,
    ResourceKey,
    StateRecord,
)


class TerraformStyleFormatter:
    """
    Terraform-style formatter for Escapement operations.

    Provides methods to format different types of output with Terraform-like
    symbols and structure:
    - `+` for create operations
    - `~` for modify operations
    - `-` for destroy operations
    - `-/+` and `+/-` for replacements
    """

    def __init__(self, console: Console | None = None):
        """Initialize formatter with Rich console."""
        self.console = console or Console()

        # Color scheme matching Terraform output
        self.colors = {
            'create': 'green',
            'modify': 'yellow',
            'destroy': 'red',
            'replace': 'magenta',
            'no_change': 'dim',
            'header': 'bold blue',
            'attribute': 'cyan',
            'comment': 'dim',
            'error': 'bold red',
            'warning': 'yellow',
        }

        # Operation symbols
        self.symbols = {
            'create': '+',
            'modify': '~',
            'destroy': '-',
            'replace': '-/+',
            'replace_cbd': '+/-',
            'no_change': ' ',
        }

        self.status_colors = {
            ActionStatus.PENDING: 'dim',
            ActionStatus.RUNNING: 'blue',
            ActionStatus.SUCCEEDED: 'green',
            ActionStatus.FAILED: 'bold red',
            ActionStatus.SKIPPED: 'yellow',
            ActionStatus.CANCELLED: 'dim',
        }

    # =========================================================================
    # Values
    # =========================================================================

    def _format_value(self, value: Any) -> str:
        if value == UNKNOWN:
            return UNKNOWN
        if isinstance(value, str):
            return json.dumps(value)
        if isinstance(value, bool):
            return "true" if value else "false"
        if value is None:
            return "null"
        return json.dumps(value, sort_keys=True, default=str)

    def _attribute_lines(self, symbol: str, attributes: dict[str, Any]) -> list[str]:
        if not attributes:
            return []
        width = max(len(name) for name in attributes)
        return [f"{symbol} {name.ljust(width)} = {self._format_value(attributes[name])}" for name in sorted(attributes)]

    def _change_lines(self, action: PlanAction) -> list[str]:
        old = action.old or {}
        new = action.new or {}
        changed = action.changed_attributes()
        if not changed:
            return []
        width = max(len(name) for name in changed)
        lines = []
        for name in changed:
            if name not in new:
                lines.append(f"- {name.ljust(width)} = {self._format_value(old[name])} -> null")
            elif name not in old:
                lines.append(f"+ {name.ljust(width)} = {self._format_value(new[name])}")
            else:
                lines.append(
                    f"~ {name.ljust(width)} = {self._format_value(old[name])} -> {self._format_value(new[name])}"
                )
        unchanged = len(set(old) & set(new)) - len([n for n in changed if n in old and n in new])
        if unchanged > 0:
            lines.append(f"# ({unchanged} unchanged attribute{'s' if unchanged != 1 else ''} hidden)")
        return lines

    # =========================================================================
    # Plan
    # =========================================================================

    def _describe(self, action: PlanAction) -> tuple[str, str, str, list[str]] | None:
        """(operation, symbol, comment, attribute lines), or None when folded into another action."""
        address = action.address

        if action.action == ActionType.CREATE and action.replace:
            kind = 'replace_cbd' if action.create_before_destroy else 'replace'
            reason = f" ({action.reason})" if action.reason else ""
            return 'replace', self.symbols[kind], f"{address} must be replaced{reason}", self._change_lines(action)

        if action.action == ActionType.CREATE:
            return 'create', self.symbols['create'], f"{address} will be created", self._attribute_lines("+", action.new or {})

        if action.action == ActionType.UPDATE:
            reason = f" ({action.reason})" if action.reason else ""
            return 'modify', self.symbols['modify'], f"{address} will be updated in-place{reason}", self._change_lines(action)

        if action.action == ActionType.DELETE and action.replace:
            # Shown together with the replacing create
            return None

        if action.action == ActionType.DELETE and action.deposed:
            return (
                'destroy', self.symbols['destroy'],
                f"{address} (deposed object {action.provider_id}) will be destroyed",
                self._attribute_lines("-", action.old or {}),
            )

        if action.action == ActionType.DELETE:
            return 'destroy', self.symbols['destroy'], f"{address} will be destroyed", self._attribute_lines("-", action.old or {})

        return None

    def format_plan(self, plan: Plan) -> Text:
        """
        Format a plan showing what Escapement will do.

        Args:
            plan: The plan to render; no-op actions are not shown

        Returns:
            Rich Text with the rendered plan
        """
        output = Text()

        if plan.is_empty:
            output.append("No changes. ", style='bold green')
            output.append("Your infrastructure matches the configuration.\n", style=self.colors['comment'])
            return output

        output.append("Escapement will perform the following actions:\n\n", style=self.colors['header'])

        for action in plan.changes:
            described = self._describe(action)
            if described is None:
                continue
            operation, symbol, comment, lines = described
            color = self.colors[operation]

            output.append(f"  # {comment}\n", style=self.colors['comment'])
            output.append(f"  {symbol} resource \"{action.key.type}\" \"{action.key.name}\" {{\n", style=color)
            for line in lines:
                style = self.colors['comment'] if line.startswith("#") else color
                output.append(f"      {line}\n", style=style)
            if action.resource is not None and action.resource.depends_on and operation != 'destroy':
                deps = ", ".join(str(k) for k in action.resource.depends_on)
                output.append(f"      depends_on = [{deps}]\n", style=color)
            output.append("    }\n\n", style=color)

        output.append(self.format_plan_summary(plan), style=self.colors['header'])
        return output

    def format_plan_summary(self, plan: Plan) -> str:
        summary = plan.summary()
        return (
            f"Plan: {summary['create']} to add, {summary['update']} to change, "
            f"{summary['delete']} to destroy.\n"
        )

    # =========================================================================
    # Apply
    # =========================================================================

    def format_transition(self, outcome: ActionOutcome) -> Text:
        """One progress line for an action status change."""
        line = Text()
        line.append(f"{outcome.address}: ", style='bold')
        verb = {
            ActionType.CREATE: "Creating",
            ActionType.UPDATE: "Modifying",
            ActionType.DELETE: "Destroying",
            ActionType.NOOP: "Checking",
        }[outcome.action]
        done = {
            ActionType.CREATE: "Creation",
            ActionType.UPDATE: "Modifications",
            ActionType.DELETE: "Destruction",
            ActionType.NOOP: "Check",
        }

        if outcome.status == ActionStatus.RUNNING:
            line.append(f"{verb}...", style=self.status_colors[outcome.status])
        elif outcome.status == ActionStatus.SUCCEEDED:
            elapsed = ""
            if outcome.started_at and outcome.finished_at:
                elapsed = f" after {(outcome.finished_at - outcome.started_at).total_seconds():.1f}s"
            line.append(f"{done[outcome.action]} complete{elapsed}", style=self.status_colors[outcome.status])
        else:
            line.append(outcome.status.value, style=self.status_colors[outcome.status])
            if outcome.error:
                line.append(f": {outcome.error}", style=self.colors['comment'])
        if outcome.tainted:
            line.append(" (tainted)", style=self.colors['warning'])
        return line

    def format_apply_report(self, report: ApplyReport) -> Text:
        """
        Format apply results.

        Returns:
            Rich Text listing failures and a summary line
        """
        output = Text()

        problems = [o for o in report.outcomes if o.status != ActionStatus.SUCCEEDED]
        if problems:
            output.append("\n")
            for outcome in problems:
                output.append_text(self.format_transition(outcome))
                output.append("\n")

        counts = {"add": 0, "change": 0, "destroy": 0}
        for outcome in report.succeeded:
            if outcome.action == ActionType.CREATE:
                counts["add"] += 1
            elif outcome.action == ActionType.UPDATE:
                counts["change"] += 1
            elif outcome.action == ActionType.DELETE:
                counts["destroy"] += 1

        if report.has_failures:
            output.append("\nApply failed! ", style=self.colors['error'])
        elif report.cancelled:
            output.append("\nApply cancelled. ", style=self.colors['warning'])
        else:
            output.append("\nApply complete! ", style='bold green')

        output.append(
            f"Resources: {counts['add']} added, {counts['change']} changed, {counts['destroy']} destroyed.\n",
            style=self.colors['header'],
        )
        return output

    # =========================================================================
    # Refresh / state
    # =========================================================================

    def format_drift(self, findings: list[DriftError]) -> Text:
        output = Text()
        if not findings:
            output.append("No drift detected.\n", style='bold green')
            return output

        output.append("Drift detected:\n\n", style=self.colors['warning'])
        for finding in findings:
            if finding.missing:
                output.append(f"  # {finding.key} no longer exists and will be re-created\n", style=self.colors['destroy'])
                continue
            output.append(f"  # {finding.key} was changed outside of Escapement\n", style=self.colors['comment'])
            for name, (stored, remote) in sorted(finding.differences.items()):
                output.append(
                    f"      ~ {name} = {self._format_value(stored)} -> {self._format_value(remote)}\n",
                    style=self.colors['modify'],
                )
        return output

    def format_state(self, records: dict[ResourceKey, StateRecord]) -> Text:
        output = Text()
        if not records:
            output.append("No resources in state.\n", style=self.colors['comment'])
            return output

        for key in sorted(records):
            record = records[key]
            output.append(str(key), style='bold')
            output.append(f"  {record.provider_id or '-'}", style=self.colors['attribute'])
            flags = [flag for flag, on in (("tainted", record.tainted), ("drifted", record.drifted)) if on]
            if record.deposed:
                flags.append(f"{len(record.deposed)} deposed")
            if flags:
                output.append(f"  ({', '.join(flags)})", style=self.colors['warning'])
            output.append("\n")
        return output
