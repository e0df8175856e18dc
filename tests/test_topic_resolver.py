import pytest

from speaking_partner.models.schemas import TopicInfo
from speaking_partner.services.topic_resolver import (
    DEFAULT_TOPICS,
    TopicCatalogError,
    TopicResolver,
    UnknownTopicError,
    initial_greeting,
    language_code,
)


def test_default_catalog_has_seed_topics():
    resolver = TopicResolver()

    names = [t.name for t in resolver.list_topics()]
    assert len(names) == len(DEFAULT_TOPICS) == 8
    assert "Daily Conversations" in names
    assert "Technology" in names


def test_resolve_uses_defaults_for_unknown_user():
    resolved = TopicResolver().resolve("1", "nobody")

    assert resolved.topic.name == "Daily Conversations"
    assert resolved.language.target_language == "English"
    assert resolved.language.native_language == "Turkish"
    assert resolved.language.language_code == "en-US"
    assert resolved.proficiency_level == "intermediate"


def test_user_preferences_apply_unless_topic_pins_language():
    resolver = TopicResolver()
    resolver.set_user_languages("ana", target_language="German", native_language="Spanish")

    free = resolver.resolve("3", "ana")
    pinned = resolver.resolve("2", "ana")

    assert free.language.target_language == "German"
    assert free.language.language_code == "de-DE"
    assert pinned.language.target_language == "English"
    assert pinned.language.native_language == "Spanish"


def test_unknown_or_inactive_topic():
    resolver = TopicResolver(topics=[TopicInfo(topic_id="x", name="Hidden", is_active=False)])

    with pytest.raises(UnknownTopicError):
        resolver.resolve("missing", "alice")
    with pytest.raises(UnknownTopicError):
        resolver.get_topic("x")
    assert resolver.list_topics() == []


def test_from_yaml_loads_topics_and_users(tmp_path):
    catalog = tmp_path / "topics.yaml"
    catalog.write_text(
        "topics:\n"
        "  - topic_id: 42\n"
        "    name: Football\n"
        "    category: Sports\n"
        "    target_language: Italian\n"
        "  - topic_id: cafe\n"
        "    name: At the Cafe\n"
        "users:\n"
        "  alice:\n"
        "    target_language: French\n"
        "    proficiency_level: beginner\n",
        encoding="utf-8",
    )

    resolver = TopicResolver.from_yaml(str(catalog))
    football = resolver.resolve("42", "alice")
    cafe = resolver.resolve("cafe", "alice")

    assert football.language.target_language == "Italian"
    assert cafe.language.target_language == "French"
    assert cafe.proficiency_level == "beginner"


def test_from_yaml_errors(tmp_path):
    broken = tmp_path / "broken.yaml"
    broken.write_text("topics: [unclosed", encoding="utf-8")

    with pytest.raises(TopicCatalogError):
        TopicResolver.from_yaml(str(tmp_path / "missing.yaml"))
    with pytest.raises(TopicCatalogError):
        TopicResolver.from_yaml(str(broken))


def test_from_yaml_rejects_non_mapping_catalogs(tmp_path):
    as_list = tmp_path / "list.yaml"
    as_list.write_text("- topic_id: travel\n  name: Travel\n", encoding="utf-8")
    as_scalar = tmp_path / "scalar.yaml"
    as_scalar.write_text("just a string\n", encoding="utf-8")
    bad_users = tmp_path / "users.yaml"
    bad_users.write_text("users:\n  - alice\n", encoding="utf-8")

    for path in (as_list, as_scalar, bad_users):
        with pytest.raises(TopicCatalogError):
            TopicResolver.from_yaml(str(path))


def test_greetings_and_language_codes():
    assert initial_greeting("Turkish", "Technology").startswith("Merhaba!")
    assert '"Technology"' in initial_greeting("Klingon", "Technology")
    assert initial_greeting("Klingon", "Technology").startswith("Hello!")
    assert language_code("Japanese") == "ja-JP"
    assert language_code("Klingon") == "en-US"
