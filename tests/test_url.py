"""
URL packaging tests: channel merging, shape classification and link output.
"""

import asyncio
import logging
from urllib.parse import quote

import pytest

from requiform.errors import AuthenticationFailed, CapacityExceeded, MalformedInput
from requiform.models import ClinicalRecord
from share.settings import Settings
from share.url import (
    EncryptedShape,
    LegacyShape,
    UnifiedShape,
    UrlChannel,
    channel_of,
    classify,
    merge_parameters,
    open_encrypted,
    open_encrypted_async,
    pack_encrypted,
    pack_encrypted_async,
    pack_record,
    prune_empty,
    read_url,
    strip_parameters,
)

BASE = "https://forms.example.org/requisition/"


def _record():
    return ClinicalRecord.model_validate({
        "personalInfo": {"firstName": "Jane", "lastName": "Doe", "birthdate": "1990-05-15"},
        "selectedPanels": ["nephronophthise"],
        "phenotypeObservations": [
            {"hpoId": "HP:0000123", "present": True},
            {"hpoId": "HP:0000456", "present": False},
        ],
        "category": "nephrology",
    })


def test_hash_data_matches_legacy_query():
    unified = read_url('#data=' + quote('{"personalInfo":{"firstName":"Jane","lastName":"Doe"}}'))
    legacy = read_url("?givenName=Jane&familyName=Doe")
    assert isinstance(unified, UnifiedShape)
    assert isinstance(legacy, LegacyShape)
    assert unified.record == legacy.record


def test_hash_wins_over_query():
    params = merge_parameters("givenName=Query&sex=F", "givenName=Hash")
    assert params == {"givenName": "Hash", "sex": "F"}


@pytest.mark.parametrize(
    "query,fragment,channel",
    [
        ("", "", UrlChannel.NO_DATA),
        ("a=1", "", UrlChannel.QUERY_ONLY),
        ("", "data=x", UrlChannel.HASH_ONLY),
        ("a=1", "b=2", UrlChannel.BOTH),
    ],
)
def test_channel_of(query, fragment, channel):
    assert channel_of(query, fragment) == channel


def test_data_takes_priority_over_encrypted_and_legacy():
    shape = classify({"data": '{"personalInfo":{"firstName":"A"}}', "encrypted": "tok", "givenName": "B"})
    assert isinstance(shape, UnifiedShape)
    assert shape.record.personal_info.first_name == "A"


def test_encrypted_takes_priority_over_legacy():
    shape = classify({"encrypted": "tok", "givenName": "B", "password": "pw"})
    assert shape == EncryptedShape(token="tok", password="pw")


def test_data_that_is_not_an_object_falls_through(caplog):
    with caplog.at_level(logging.WARNING, logger="share.url"):
        shape = classify({"data": "[1,2]", "givenName": "B"})
    assert isinstance(shape, LegacyShape)
    assert "not a JSON object" in caplog.text


def test_data_object_with_bad_structure():
    with pytest.raises(MalformedInput):
        classify({"data": '{"personalInfo":"Jane Doe"}'})


def test_no_data():
    assert read_url(BASE) is None
    assert read_url(BASE + "?utm_source=mail") is None


def test_legacy_query_fields():
    shape = read_url(BASE + "?givenName=Jane+Ann&physicianName=Dr.%20Smith&selectedTests=a,b&category=neuro")
    info = shape.record.personal_info
    assert info.first_name == "Jane Ann"
    assert info.referrer == "Dr. Smith"
    assert shape.record.selected_panels == ["a", "b"]
    assert shape.record.category == "neuro"


def test_plus_in_data_is_literal():
    shape = read_url('#data={"personalInfo":{"firstName":"A+B"}}')
    assert shape.record.personal_info.first_name == "A+B"


def test_url_ceiling():
    settings = Settings(MAX_URL_LENGTH=100)
    with pytest.raises(CapacityExceeded):
        read_url(BASE + "#data=" + "x" * 200, settings)


def test_param_ceiling():
    settings = Settings(MAX_PARAM_LENGTH=50)
    with pytest.raises(CapacityExceeded):
        read_url(BASE + "#encrypted=" + "A" * 51, settings)


def test_pack_record_writes_hash_data_only():
    url = pack_record(_record(), base_url=BASE + "?old=1#stale")
    assert url.startswith(BASE + "#data=")
    assert "?" not in url
    shape = read_url(url)
    assert isinstance(shape, UnifiedShape)
    assert shape.record == _record()


def test_pack_record_prunes_empty_values():
    url = pack_record({"personalInfo": {"firstName": "Jane"}}, base_url=BASE)
    assert "lastName" not in url
    assert "selectedPanels" not in url
    assert "phenotypeObservations" not in url


def test_pack_record_keeps_absent_observations():
    url = pack_record(_record(), base_url=BASE)
    assert read_url(url).record.phenotype_observations[1].present is False


def test_pack_record_keeps_only_usable_observations():
    record = {
        "personalInfo": {"firstName": "Jane"},
        "phenotypeObservations": [
            {"hpoId": None, "present": True},
            {"hpoId": "HP:0000123", "present": False},
        ],
    }
    observations = read_url(pack_record(record, base_url=BASE)).record.phenotype_observations
    assert [(o.hpo_id, o.present) for o in observations] == [("HP:0000123", False)]


def test_pack_record_uses_configured_base():
    url = pack_record(_record(), settings=Settings(BASE_URL="https://other.example/app"))
    assert url.startswith("https://other.example/app#data=")


def test_long_link_is_logged(caplog):
    with caplog.at_level(logging.WARNING, logger="share.url"):
        pack_record(_record(), base_url=BASE, settings=Settings(LINK_WARN_LENGTH=50))
    assert "Generated link length" in caplog.text


def test_encrypted_link_round_trip():
    url = pack_encrypted(_record(), "s3cret", base_url=BASE)
    assert url.startswith(BASE + "#encrypted=")
    shape = read_url(url)
    assert isinstance(shape, EncryptedShape)
    assert shape.password is None
    assert open_encrypted(shape, "s3cret") == _record()


def test_encrypted_link_wrong_password():
    shape = read_url(pack_encrypted(_record(), "s3cret", base_url=BASE))
    with pytest.raises(AuthenticationFailed):
        open_encrypted(shape, "nope")


def test_encrypted_link_with_embedded_password():
    url = pack_encrypted(_record(), "s3cret", base_url=BASE) + "&password=s3cret"
    shape = read_url(url)
    assert open_encrypted(shape) == _record()


def test_encrypted_link_async():
    async def run():
        url = await pack_encrypted_async(_record(), "pw", base_url=BASE)
        return await open_encrypted_async(read_url(url), "pw")

    assert asyncio.run(run()) == _record()


def test_strip_parameters():
    assert strip_parameters("https://a.example/x/y?z=1#data=2") == "https://a.example/x/y"


def test_prune_empty():
    assert prune_empty({
        "a": "",
        "b": None,
        "c": [],
        "d": {"e": ""},
        "f": [{"g": None}, {"h": 1}],
        "i": False,
        "j": 0,
    }) == {"f": [{"h": 1}], "i": False, "j": 0}
