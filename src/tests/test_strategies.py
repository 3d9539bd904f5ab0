import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from attributes import STANDARD_FIELDS, AttributeSnapshot
from errors import ConfigInvalid
from strategies import (
    DEFAULT_VARIANT,
    STRATEGY_REGISTRY,
    MultiValueFieldConfig,
    MultiValueFieldStrategy,
    ProfileFieldStrategy,
    StrategyVariant,
    UserInfoFieldStrategy,
    build_strategy,
    parse_variant,
    resolve_variant,
)

from . import strategies


def _dedupe(values: list[str]) -> list[str]:
    return list(dict.fromkeys(values))


def test_registry_covers_every_variant():
    assert set(STRATEGY_REGISTRY) == set(StrategyVariant)
    for variant, strategy_cls in STRATEGY_REGISTRY.items():
        assert strategy_cls.variant == variant


@settings(max_examples=50)
@given(field=strategies.standard_field, value=strategies.attribute_value)
def test_profile_field_yields_the_field_value(field: str, value: str):
    strategy = build_strategy(StrategyVariant.PROFILE_FIELD, ProfileFieldStrategy.parse_config({"field": field}))
    snapshot = AttributeSnapshot(member_id=1, standard={field: value})
    assert strategy.candidate_keys(snapshot) == [value]
    assert strategy.candidate_keys(AttributeSnapshot(member_id=1)) == []


@settings(max_examples=50)
@given(strategies.member_record(), strategies.standard_field)
def test_candidate_keys_are_deterministic(record: dict, field: str):
    snapshot = AttributeSnapshot.from_record(record).value  # type: ignore[union-attr]
    for variant in StrategyVariant:
        strategy_cls = STRATEGY_REGISTRY[variant]
        strategy = strategy_cls(strategy_cls.parse_config({"field": field}))
        assert strategy.candidate_keys(snapshot) == strategy.candidate_keys(snapshot)


def test_user_info_field_reads_custom_fields():
    strategy = UserInfoFieldStrategy(UserInfoFieldStrategy.parse_config({"field": "team"}))
    snapshot = AttributeSnapshot(member_id=1, standard={"department": "Sales"}, custom={"team": "Blue"})
    assert strategy.candidate_keys(snapshot) == ["Blue"]
    assert strategy.grouping_by() == "team"


@settings(max_examples=100)
@given(st.data(), strategies.delimiter)
def test_multivalue_splits_trims_and_dedupes(data: st.DataObject, delimiter: str):
    joined, values = data.draw(strategies.multivalue(delimiter))
    config = MultiValueFieldStrategy.parse_config({"field": "skills", "delimiter": delimiter})
    strategy = MultiValueFieldStrategy(config)
    snapshot = AttributeSnapshot(member_id=1, custom={"skills": joined})
    assert strategy.candidate_keys(snapshot) == _dedupe(values)


def test_multivalue_drops_blank_parts():
    strategy = MultiValueFieldStrategy(MultiValueFieldConfig(field="skills", delimiter=";"))
    snapshot = AttributeSnapshot(member_id=1, custom={"skills": " python ; ;sql;python;  "})
    assert strategy.candidate_keys(snapshot) == ["python", "sql"]
    assert strategy.delimited_by() == ";"


def test_unconfigured_strategy_yields_nothing():
    snapshot = AttributeSnapshot(member_id=1, standard={"department": "Sales"})
    for strategy_cls in STRATEGY_REGISTRY.values():
        assert strategy_cls().candidate_keys(snapshot) == []


@pytest.mark.parametrize(
    ("strategy_cls", "config"),
    [
        (ProfileFieldStrategy, {}),
        (ProfileFieldStrategy, {"field": "   "}),
        (ProfileFieldStrategy, {"field": "shoe_size"}),
        (UserInfoFieldStrategy, {"field": ""}),
        (MultiValueFieldStrategy, {"field": "skills", "delimiter": "::"}),
        (MultiValueFieldStrategy, "field=skills"),
    ],
)
def test_invalid_configs_are_rejected(strategy_cls, config):  # noqa: ANN001
    assert not strategy_cls.is_config_valid(config)
    with pytest.raises(ConfigInvalid):
        strategy_cls.parse_config(config)


def test_config_options():
    catalog = {"team": "Team", "skills": "Skills"}
    assert set(ProfileFieldStrategy().config_options(catalog)) == set(STANDARD_FIELDS)
    assert UserInfoFieldStrategy().config_options(catalog) == catalog
    assert ProfileFieldStrategy().delimiter_options() == {}
    assert set(MultiValueFieldStrategy().delimiter_options()) == {",", ";", "|", "/", "\n"}


def test_parse_variant_rejects_unknown_tags():
    assert parse_variant("user_info_field") == StrategyVariant.USER_INFO_FIELD
    with pytest.raises(ConfigInvalid):
        parse_variant("by_shoe_size")


@pytest.mark.parametrize("tag", [None, "", "by_shoe_size"])
def test_resolve_variant_falls_back_to_default(tag):  # noqa: ANN001
    assert resolve_variant(tag) == (DEFAULT_VARIANT, True)


def test_resolve_variant_known_tag():
    assert resolve_variant("user_info_field_multivalue") == (StrategyVariant.USER_INFO_FIELD_MULTIVALUE, False)


@pytest.mark.parametrize("blank", [" ", "   ", "\t", " \n "])
def test_blank_values_produce_no_key(blank: str):
    snapshot = AttributeSnapshot(member_id=1, standard={"department": blank}, custom={"team": blank, "skills": blank})
    assert ProfileFieldStrategy(ProfileFieldStrategy.parse_config({"field": "department"})).candidate_keys(snapshot) == []
    assert UserInfoFieldStrategy(UserInfoFieldStrategy.parse_config({"field": "team"})).candidate_keys(snapshot) == []
    multivalue = MultiValueFieldStrategy(MultiValueFieldStrategy.parse_config({"field": "skills"}))
    assert multivalue.candidate_keys(snapshot) == []
