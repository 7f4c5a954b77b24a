"""Routing keys: `{project-slug}-{random suffix}`, also used as the public subdomain."""
import re
import secrets

NAMESPACE_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"
SUFFIX_LENGTH = 6
MAX_LABEL_LENGTH = 63

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_LABEL = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")


def slugify_project_name(project_name: str) -> str:
    max_slug = MAX_LABEL_LENGTH - SUFFIX_LENGTH - 1
    slug = _NON_ALNUM.sub("-", project_name.lower()).strip("-")
    return slug[:max_slug].rstrip("-")


def random_suffix(length: int = SUFFIX_LENGTH) -> str:
    return "".join(secrets.choice(NAMESPACE_ALPHABET) for _ in range(length))


def generate_namespace(project_name: str) -> str:
    slug = slugify_project_name(project_name)
    if not slug:
        raise ValueError(f"Project name {project_name!r} has no characters usable in a subdomain")
    return f"{slug}-{random_suffix()}"


def is_valid_namespace(namespace: str) -> bool:
    return 0 < len(namespace) <= MAX_LABEL_LENGTH and bool(_LABEL.match(namespace))
