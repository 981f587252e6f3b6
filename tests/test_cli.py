"""
CLI tests for requiform-share (argparse) and requiform-qr (click).
"""

import json

import pytest
from click.testing import CliRunner

from cli.main import main
from cli.qr import qr

RECORD = {
    "personalInfo": {"firstName": "Jane", "lastName": "Doe", "sex": "female"},
    "selectedPanels": ["nephronophthise"],
    "phenotypeObservations": [{"hpoId": "HP:0000123", "present": True}],
    "pedigree": {"individuals": [{"name": "mum", "sex": "F"}, {"name": "kid", "mother": "mum", "affected": True}]},
}


@pytest.fixture
def record_file(tmp_path):
    path = tmp_path / "record.json"
    path.write_text(json.dumps(RECORD), encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("REQUIFORM_BASE_URL", "REQUIFORM_LOG_LEVEL", "REQUIFORM_QR_PAYLOAD_CEILING"):
        monkeypatch.delenv(name, raising=False)


def test_encode_then_decode(record_file, tmp_path, capsys):
    payload = tmp_path / "payload.json"
    main(["encode", str(record_file), "-o", str(payload)])
    assert json.loads(payload.read_text())[:2] == [1, 4]

    main(["decode", str(payload)])
    decoded = json.loads(capsys.readouterr().out)
    assert decoded["personalInfo"]["firstName"] == "Jane"
    assert decoded["phenotypeObservations"] == [{"hpoId": "HP:0000123", "present": True}]
    assert len(decoded["pedigree"]["individuals"]) == 2


def test_encrypt_then_decrypt(tmp_path, capsys):
    plain = tmp_path / "plain.txt"
    plain.write_text("hello", encoding="utf-8")
    token = tmp_path / "token.txt"
    main(["encrypt", str(plain), "--password", "correct", "-o", str(token)])

    main(["decrypt", str(token), "--password", "correct"])
    assert capsys.readouterr().out.strip() == "hello"


def test_decrypt_wrong_password_exits(tmp_path):
    plain = tmp_path / "plain.txt"
    plain.write_text("hello", encoding="utf-8")
    token = tmp_path / "token.txt"
    main(["encrypt", str(plain), "--password", "correct", "-o", str(token)])

    with pytest.raises(SystemExit) as exc:
        main(["decrypt", str(token), "--password", "wrong"])
    assert str(exc.value).startswith("❌ Decryption failed")


def test_share_and_open(record_file, capsys, monkeypatch):
    monkeypatch.setenv("REQUIFORM_BASE_URL", "https://forms.example.org/")
    main(["share", str(record_file)])
    url = capsys.readouterr().out.strip()
    assert url.startswith("https://forms.example.org/#data=")

    main(["open", url])
    opened = json.loads(capsys.readouterr().out)
    assert opened["personalInfo"]["lastName"] == "Doe"


def test_share_encrypted_and_open(record_file, capsys):
    main(["share", str(record_file), "--password", "pw", "--base-url", "https://x.example/"])
    url = capsys.readouterr().out.strip()
    assert "#encrypted=" in url

    with pytest.raises(SystemExit):
        main(["open", url])

    main(["open", url, "--password", "pw"])
    assert json.loads(capsys.readouterr().out)["selectedPanels"] == ["nephronophthise"]


def test_open_without_data():
    with pytest.raises(SystemExit) as exc:
        main(["open", "https://x.example/"])
    assert "No record data" in str(exc.value)


def test_paste(tmp_path, capsys):
    text = tmp_path / "paste.txt"
    text.write_text("First Name: Jane\nPanels: a, b", encoding="utf-8")
    main(["paste", str(text)])
    out = json.loads(capsys.readouterr().out)
    assert out["selectedPanels"] == ["a", "b"]

    main(["paste", str(text), "--text"])
    assert capsys.readouterr().out.strip() == "First Name: Jane\nPanels: a, b"


def test_missing_file():
    with pytest.raises(SystemExit):
        main(["encode", "/nonexistent/record.json"])


def test_qr_export(record_file, tmp_path):
    out = tmp_path / "codes"
    result = CliRunner().invoke(qr, ["export", str(record_file), "--out", str(out)])
    assert result.exit_code == 0, result.output
    for name in ("patient", "phenotype", "pedigree"):
        assert (out / f"{name}.png").read_bytes()[:4] == b"\x89PNG"


def test_qr_complete(record_file, tmp_path):
    out = tmp_path / "complete.png"
    result = CliRunner().invoke(qr, ["complete", str(record_file), "--out", str(out), "--width", "150"])
    assert result.exit_code == 0, result.output
    assert out.exists()


def test_qr_complete_over_ceiling(record_file, tmp_path, monkeypatch):
    monkeypatch.setenv("REQUIFORM_QR_PAYLOAD_CEILING", "10")
    result = CliRunner().invoke(qr, ["complete", str(record_file), "--out", str(tmp_path / "c.png")])
    assert result.exit_code == 1
    assert "exceeds ceiling" in result.output
