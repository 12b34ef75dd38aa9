"""Slug helpers for project identifiers."""

from slugify import slugify


def project_slug(value: str, suffix: str | int | None = None) -> str:
    """Slugify a project name, appending a disambiguating suffix when given."""
    base = slugify(value, max_length=120) or "project"
    if suffix is not None:
        return f"{base}-{slugify(str(suffix))}"
    return base
