"""Unit tests for namespace generation."""

import pytest

from app.modules.deployments.namespace import (
    MAX_LABEL_LENGTH,
    SUFFIX_LENGTH,
    generate_namespace,
    is_valid_namespace,
    slugify_project_name,
)


class TestSlugify:
    """Tests for project name slugs."""

    @pytest.mark.parametrize(
        "name,slug",
        [
            ("Demo", "demo"),
            ("My Cool Site", "my-cool-site"),
            ("  --Weird__Name!!  ", "weird-name"),
            ("v2.0 release", "v2-0-release"),
            ("***", ""),
        ],
    )
    def test_slugify(self, name: str, slug: str):
        assert slugify_project_name(name) == slug

    def test_long_names_leave_room_for_suffix(self):
        slug = slugify_project_name("a" * 200)

        assert len(slug) + 1 + SUFFIX_LENGTH <= MAX_LABEL_LENGTH


class TestGenerateNamespace:
    """Tests for generate_namespace."""

    def test_shape(self):
        namespace = generate_namespace("Demo")
        slug, suffix = namespace.rsplit("-", 1)

        assert slug == "demo"
        assert len(suffix) == SUFFIX_LENGTH
        assert is_valid_namespace(namespace)

    def test_long_name_is_a_valid_label(self):
        namespace = generate_namespace("x-" * 100)

        assert len(namespace) <= MAX_LABEL_LENGTH
        assert is_valid_namespace(namespace)

    def test_unusable_name_raises(self):
        with pytest.raises(ValueError):
            generate_namespace("!!!")

    def test_ten_thousand_namespaces_are_distinct(self):
        namespaces = {generate_namespace("demo") for _ in range(10_000)}

        assert len(namespaces) == 10_000


@pytest.mark.parametrize(
    "label,valid",
    [
        ("demo-abc123", True),
        ("a", True),
        ("-demo", False),
        ("demo-", False),
        ("Demo", False),
        ("de_mo", False),
        ("", False),
        ("a" * 64, False),
    ],
)
def test_is_valid_namespace(label: str, valid: bool):
    assert is_valid_namespace(label) is valid
