"""Tests for template rendering and context building."""
from datetime import datetime, timezone

from core.rendering import TemplateRenderer, build_context
from models.schemas import Campaign, Contact, Lead, MessageTemplate, Tenant, User

renderer = TemplateRenderer()


def test_substitutes_dotted_paths():
    ctx = {"contact": {"firstName": "Ada"}, "lead": {"companyName": "Acme"}}
    assert renderer.render_text("Hi {{contact.firstName}} at {{ lead.companyName }}", ctx) == "Hi Ada at Acme"


def test_unknown_and_none_values_are_left_in_place():
    ctx = {"contact": {"firstName": None}}
    text = "Hi {{contact.firstName}} {{contact.nickname}} {{missing.path}}"
    assert renderer.render_text(text, ctx) == text


def test_non_string_values_are_stringified():
    assert renderer.render_text("{{lead.employees}} people", {"lead": {"employees": 42}}) == "42 people"


def test_build_context_exposes_both_key_styles():
    lead = Lead(company_name="Acme GmbH", city="Berlin", custom_fields={"tier": "gold"})
    contact = Contact(name="Ada Lovelace", email="ada@example.com")
    campaign = Campaign(id="c1", tenant_id="t1", name="Q1")

    ctx = build_context(lead, contact, campaign, tenant=Tenant(id="t1", name="Acme Sales"))
    assert ctx["lead"]["companyName"] == ctx["lead"]["company_name"] == "Acme GmbH"
    assert ctx["lead"]["tier"] == "gold"
    assert ctx["contact"]["firstName"] == "Ada"
    assert ctx["contact"]["email"] == "ada@example.com"
    assert ctx["campaign"] == {"id": "c1", "name": "Q1"}
    assert ctx["tenant"] == {"id": "t1", "name": "Acme Sales"}
    assert ctx["company"] == {"name": "Acme Sales"}


def test_build_context_without_lead():
    ctx = build_context(None, Contact(first_name="Grace", last_name="Hopper"))
    assert ctx["lead"] == {}
    assert ctx["contact"]["name"] == "Grace Hopper"


def test_render_template():
    template = MessageTemplate(subject="Hello {{contact.firstName}}", body="Dear {{contact.name}},")
    message = renderer.render(template, build_context(None, Contact(name="Ada Lovelace")))
    assert message.subject == "Hello Ada"
    assert message.body == "Dear Ada Lovelace,"


def test_last_name_is_derived_from_full_name():
    ctx = build_context(None, Contact(name="Jane van der Berg"))
    assert ctx["contact"]["firstName"] == "Jane"
    assert ctx["contact"]["lastName"] == ctx["contact"]["last_name"] == "van der Berg"

    single = build_context(None, Contact(name="Cher"))
    assert single["contact"]["lastName"] == ""


def test_explicit_name_fields_win_over_split():
    ctx = build_context(None, Contact(name="J. Doe", first_name="Jane", last_name="Doe-Smith"))
    assert ctx["contact"]["firstName"] == "Jane"
    assert ctx["contact"]["lastName"] == "Doe-Smith"


def test_sender_company_and_date_sections():
    now = datetime(2026, 3, 9, 10, 30, tzinfo=timezone.utc)
    lead = Lead(id="lead7", company_name="Acme", size="51-200", state="BY", postal_code="80331",
                address="Marienplatz 1", notes="met at expo")
    contact = Contact(id="c9", name="Jane Doe", position="CTO")
    ctx = build_context(
        lead, contact,
        tenant=Tenant(id="t1", name="Outbound Co"),
        sender=User(id="u1", name="Sam Seller", email="sam@outbound.example"),
        now=now,
    )

    text = ("{{contact.id}} {{contact.lastName}} {{contact.title}} | {{sender.name}} <{{sender.email}}> | "
            "{{company.name}} | {{lead.id}} {{lead.size}} {{lead.state}} {{lead.postalCode}} | "
            "{{date.today}} {{date.month}} {{date.year}}")
    assert renderer.render_text(text, ctx) == (
        "c9 Doe CTO | Sam Seller <sam@outbound.example> | Outbound Co | "
        "lead7 51-200 BY 80331 | 2026-03-09 March 2026"
    )
    assert ctx["lead"]["address"] == "Marienplatz 1"
    assert ctx["lead"]["notes"] == "met at expo"


def test_sender_and_company_absent_without_records():
    ctx = build_context(None, Contact(name="Jane Doe"))
    assert "sender" not in ctx
    assert "company" not in ctx
    assert renderer.render_text("{{sender.name}}", ctx) == "{{sender.name}}"
