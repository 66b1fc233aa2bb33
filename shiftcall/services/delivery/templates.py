from __future__ import annotations

from datetime import datetime
import re

from shiftcall.domain.contacts import ContactProfile, JobProfile


_PLACEHOLDER = re.compile(r"{{\s*(\w+)\s*}}")

DEFAULT_INVITATION_TEMPLATE = (
    "Hi {{firstName}}, are you available for {{jobName}} on {{jobDate}} at {{jobTime}}? "
    "Location: {{jobLocation}}."
)


def format_job_date(value: datetime) -> str:
    # e.g. "Mar 5, 2026"
    return f"{value:%b} {value.day}, {value.year}"


def format_job_time(value: datetime) -> str:
    # e.g. "9:30 AM"
    hour = value.hour % 12 or 12
    return f"{hour}:{value:%M} {'AM' if value.hour < 12 else 'PM'}"


def render_template(template: str, contact: ContactProfile, job: JobProfile) -> str:
    values = {
        "firstName": contact.first_name,
        "lastName": contact.last_name,
        "jobName": job.name,
        "jobLocation": job.location,
        "jobDate": format_job_date(job.start_time),
        "jobTime": format_job_time(job.start_time),
    }

    def _replace(match: re.Match[str]) -> str:
        # Unknown placeholders stay visible so a broken template is noticed rather than silently blanked.
        return values.get(match.group(1), match.group(0))

    return _PLACEHOLDER.sub(_replace, template)


def resolve_message_body(
    *,
    contact: ContactProfile,
    job: JobProfile,
    message_template: str | None = None,
    custom_message: str | None = None,
) -> str:
    # A custom message overrides the template; both may carry placeholders.
    source = custom_message or message_template or DEFAULT_INVITATION_TEMPLATE
    return render_template(source, contact, job)
