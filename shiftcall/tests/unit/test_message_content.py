from __future__ import annotations

from datetime import datetime, timezone

from shiftcall.services.delivery.phone import to_e164
from shiftcall.services.delivery.templates import (
    format_job_date,
    format_job_time,
    render_template,
    resolve_message_body,
)
from shiftcall.tests.utils.factories import make_contact, make_job


def test_job_date_and_time_formatting() -> None:
    morning = datetime(2026, 3, 5, 9, 30, tzinfo=timezone.utc)
    evening = datetime(2026, 11, 21, 18, 5, tzinfo=timezone.utc)
    assert format_job_date(morning) == "Mar 5, 2026"
    assert format_job_time(morning) == "9:30 AM"
    assert format_job_time(evening) == "6:05 PM"
    assert format_job_time(datetime(2026, 1, 1, 0, 0, tzinfo=timezone.utc)) == "12:00 AM"


def test_render_template_substitutes_known_placeholders_only() -> None:
    contact = make_contact(first_name="Ada")
    job = make_job(name="Stocktake", location="Store 12")
    rendered = render_template("Hi {{firstName}}, {{ jobName }} at {{jobLocation}} {{unknown}}", contact, job)
    assert rendered == "Hi Ada, Stocktake at Store 12 {{unknown}}"


def test_custom_message_overrides_template() -> None:
    contact = make_contact(first_name="Ada")
    job = make_job()
    body = resolve_message_body(
        contact=contact,
        job=job,
        message_template="Template for {{firstName}}",
        custom_message="Custom for {{firstName}} on {{jobDate}}",
    )
    assert body == "Custom for Ada on Mar 5, 2026"


def test_default_template_used_without_content() -> None:
    body = resolve_message_body(contact=make_contact(first_name="Ada"), job=make_job())
    assert body.startswith("Hi Ada, are you available for Warehouse Shift on Mar 5, 2026 at 9:30 AM?")


def test_phone_normalization_to_e164() -> None:
    assert to_e164("(555) 010-2000", "US") == "+15550102000"
    assert to_e164("15550102000", "US") == "+15550102000"
    assert to_e164("+44 7700 900123", "US") == "+447700900123"
    assert to_e164("07700 900123", "GB") == "+447700900123"
    assert to_e164("555 010 2000", "ZZ") == "+15550102000"
    assert to_e164("", "US") is None
    assert to_e164(None, "US") is None
    assert to_e164("n/a", "US") is None
