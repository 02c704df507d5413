"""Placeholder substitution for message templates."""

from __future__ import annotations

import re
from typing import Any

from leadflow.crm.models import CRMLead


PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


def lead_template_variables(lead: CRMLead) -> dict[str, str]:
    """Variables a template may reference for a lead.

    Both the camelCase names used by existing templates and snake_case
    aliases resolve to the same values. Missing optional fields render
    as an empty string.
    """
    values = {
        "first_name": lead.first_name or "",
        "last_name": lead.last_name or "",
        "email": lead.email or "",
        "phone": lead.phone or "",
    }
    return {
        **values,
        "firstName": values["first_name"],
        "lastName": values["last_name"],
    }


def render_template(template: str, variables: dict[str, Any]) -> str:
    """Replace ``{{name}}`` placeholders; unknown names are left verbatim."""

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key not in variables:
            return match.group(0)
        value = variables[key]
        return "" if value is None else str(value)

    return PLACEHOLDER_RE.sub(_replace, template)
