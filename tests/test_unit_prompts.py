import pytest

from gifter_jobs.services.prompts import (
    DEFAULT_PROMPTS,
    PromptLibrary,
    PromptNotFoundError,
    PromptTemplate,
    parse_prompt_version,
    render_template,
)


def test_render_variables_and_sections():
    template = "Hi {{name}}!{{#vip}} VIP{{/vip}}{{^vip}} guest{{/vip}} ({{missing}})"
    assert render_template(template, {"name": "Ada", "vip": True}) == "Hi Ada! VIP ()"
    assert render_template(template, {"name": "Ada", "vip": False}) == "Hi Ada! guest ()"


def test_nested_sections_render():
    template = "{{#a}}A{{#b}}B{{/b}}{{/a}}"
    assert render_template(template, {"a": True, "b": True}) == "AB"
    assert render_template(template, {"a": True, "b": False}) == "A"
    assert render_template(template, {"a": False, "b": True}) == ""


def test_library_versions_and_lookup():
    library = PromptLibrary()
    library.register(PromptTemplate("greeting", 1, "Greeting", "", "v1 {{name}}"))
    library.register(PromptTemplate("greeting", 2, "Greeting", "", "v2 {{name}}"))
    assert library.get("greeting").version == 2
    assert library.render("greeting", {"name": "Bo"}, version=1) == "v1 Bo"
    with pytest.raises(PromptNotFoundError):
        library.get("greeting", 3)
    with pytest.raises(KeyError):
        library.get("farewell")


def test_parse_prompt_version():
    assert parse_prompt_version("v2") == 2
    assert parse_prompt_version("3") == 3
    assert parse_prompt_version(None) is None
    assert parse_prompt_version("latest") is None


def test_curated_collections_cluster_prompt():
    rendered = DEFAULT_PROMPTS.render(
        "curated_collections",
        {"date": "2025-12-01", "season": "winter / holiday season", "productCount": 30, "isCluster": True, "maxItems": 8},
    )
    assert "curate the BEST 30 items" in rendered
    assert "Product Pool" not in rendered
    assert "Create 1 collection(s)" in rendered
    assert '"maxItems": 8' in rendered
    assert "{{" not in rendered
