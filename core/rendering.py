"""
Template rendering — ``{{dotted.path}}`` placeholders against a plain dict.

Unknown paths and None values are left in the output untouched.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Optional

from models.schemas import (
    Campaign, Contact, Lead, MessageTemplate, RenderedMessage, Tenant, User,
)

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")
_MISSING = object()


def _lookup(context: dict[str, Any], path: str) -> Any:
    value: Any = context
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return _MISSING
    return value


def _split_name(name: str) -> tuple[str, str]:
    parts = name.split(" ") if name else []
    return (parts[0] if parts else ""), " ".join(parts[1:])


def build_context(
    lead: Optional[Lead],
    contact: Optional[Contact],
    campaign: Optional[Campaign] = None,
    tenant: Optional[Tenant] = None,
    sender: Optional[User] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """
    Flatten the records a template may reference into one lookup dict.

    Sections: lead, contact, campaign, sender, company/tenant, date.
    Contact first/last names fall back to splitting ``name`` on the first space.
    """
    context: dict[str, Any] = {"lead": {}, "contact": {}, "campaign": {}}
    if lead is not None:
        context["lead"] = {
            **lead.custom_fields,
            "id": lead.id,
            "companyName": lead.company_name,
            "company_name": lead.company_name,
            "website": lead.website,
            "industry": lead.industry,
            "size": lead.size,
            "status": lead.status,
            "address": lead.address,
            "city": lead.city,
            "state": lead.state,
            "country": lead.country,
            "postalCode": lead.postal_code,
            "postal_code": lead.postal_code,
            "notes": lead.notes,
        }
    if contact is not None:
        split_first, split_last = _split_name(contact.name)
        first = contact.first_name or split_first
        last = contact.last_name or split_last
        context["contact"] = {
            **contact.custom_fields,
            "id": contact.id,
            "name": contact.name or " ".join(p for p in (first, last) if p),
            "firstName": first,
            "first_name": first,
            "lastName": last,
            "last_name": last,
            "email": contact.email,
            "phone": contact.phone,
            "position": contact.position,
            "title": contact.position,
        }
    if campaign is not None:
        context["campaign"] = {"id": campaign.id, "name": campaign.name}
    if sender is not None:
        context["sender"] = {"id": sender.id, "name": sender.name, "email": sender.email}
    if tenant is not None:
        context["company"] = {"name": tenant.name}
        context["tenant"] = {"id": tenant.id, "name": tenant.name}

    now = now or datetime.now(timezone.utc)
    context["date"] = {
        "today": now.date().isoformat(),
        "year": now.year,
        "month": now.strftime("%B"),
    }
    return context


class TemplateRenderer:

    def render_text(self, text: str, context: dict[str, Any]) -> str:
        def _sub(match: re.Match) -> str:
            value = _lookup(context, match.group(1))
            if value is _MISSING or value is None:
                return match.group(0)
            return str(value)

        return _PLACEHOLDER.sub(_sub, text or "")

    def render(self, template: MessageTemplate, context: dict[str, Any]) -> RenderedMessage:
        return RenderedMessage(
            subject=self.render_text(template.subject, context),
            body=self.render_text(template.body, context),
        )
