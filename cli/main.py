from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional, Sequence

from pydantic import ValidationError

from requiform.codec import compact_json, complete_payload, decode_payload
from requiform.errors import RequiFormError
from requiform.models import ClinicalRecord
from requiform.paste import format_record_text, parse_pasted_text
from share.cipher import decrypt_data_async, encrypt_data
from share.settings import Settings
from share.url import EncryptedShape, open_encrypted, pack_encrypted, pack_record, read_url

logger = logging.getLogger("requiform")


def read_text(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    with open(path, "r", encoding="utf-8") as f:
        return f.read()

def write_text(path: Optional[str], text: str) -> None:
    if not path or path == "-":
        print(text)
        return
    with open(path, "w", encoding="utf-8") as f:
        f.write(text + "\n")

def load_record(path: str) -> ClinicalRecord:
    """Record JSON from a file (or stdin with "-"), in any accepted export shape."""
    try:
        data = json.loads(read_text(path))
    except ValueError as e:
        raise SystemExit(f"❌ Not a JSON file: {path} ({e})")
    if not isinstance(data, dict):
        raise SystemExit(f"❌ Expected a JSON object in {path}")
    try:
        return ClinicalRecord.model_validate(data)
    except ValidationError as e:
        raise SystemExit(f"❌ Invalid record in {path}: {e.error_count()} error(s)")

def dump_record(record: ClinicalRecord) -> str:
    return json.dumps(record.to_unified(), indent=2, ensure_ascii=False)

def resolve_password(args) -> str:
    if args.password:
        return args.password
    raise SystemExit("❌ A password is required (--password)")

def cmd_encode(args):
    record = load_record(args.record)
    payload = compact_json(complete_payload(record))
    write_text(args.output, payload)
    print(f"✅ Encoded complete payload ({len(payload)} chars)", file=sys.stderr)

def cmd_decode(args):
    record = decode_payload(read_text(args.payload).strip())
    write_text(args.output, dump_record(record))

def cmd_encrypt(args):
    token = encrypt_data(read_text(args.input), resolve_password(args))
    write_text(args.output, token)

def cmd_decrypt(args):
    token = read_text(args.input).strip()
    write_text(args.output, asyncio.run(decrypt_data_async(token, resolve_password(args))))

def cmd_share(args):
    settings = Settings.load()
    record = load_record(args.record)
    if args.password:
        url = pack_encrypted(record, args.password, base_url=args.base_url, settings=settings)
    else:
        url = pack_record(record, base_url=args.base_url, settings=settings)
    write_text(args.output, url)
    if len(url) > settings.LINK_WARN_LENGTH:
        print(f"⚠️  Link is {len(url)} characters long and may not work everywhere", file=sys.stderr)

def cmd_open(args):
    shape = read_url(args.url, Settings.load())
    if shape is None:
        raise SystemExit("❌ No record data found in URL")
    if isinstance(shape, EncryptedShape):
        if not (args.password or shape.password):
            raise SystemExit("❌ This link is password protected (--password)")
        record = open_encrypted(shape, args.password)
    else:
        record = shape.record
    print(f"🔗 {type(shape).__name__.replace('Shape', '').lower()} link", file=sys.stderr)
    write_text(args.output, dump_record(record))

def cmd_paste(args):
    record = parse_pasted_text(read_text(args.input))
    if args.text:
        write_text(args.output, format_record_text(record))
    else:
        write_text(args.output, dump_record(record))

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="requiform-share")
    p.add_argument("--log-level", help="Override REQUIFORM_LOG_LEVEL (DEBUG, INFO, WARNING, ...)")
    sub = p.add_subparsers(dest="cmd", required=True)

    # encode
    e = sub.add_parser("encode", help="Encode a record JSON file as a complete compact payload")
    e.add_argument("record", help="Record JSON file, or - for stdin")
    e.add_argument("--output", "-o", help="Output file (default: stdout)")
    e.set_defaults(func=cmd_encode)

    # decode
    d = sub.add_parser("decode", help="Decode any compact payload (e.g. a scanned QR code)")
    d.add_argument("payload", help="File holding the payload JSON, or - for stdin")
    d.add_argument("--output", "-o")
    d.set_defaults(func=cmd_decode)

    # encrypt
    en = sub.add_parser("encrypt", help="Encrypt text into a link token")
    en.add_argument("input", help="Plaintext file, or - for stdin")
    en.add_argument("--password", required=True)
    en.add_argument("--output", "-o")
    en.set_defaults(func=cmd_encrypt)

    # decrypt
    de = sub.add_parser("decrypt", help="Decrypt a link token")
    de.add_argument("input", help="Token file, or - for stdin")
    de.add_argument("--password", required=True)
    de.add_argument("--output", "-o")
    de.set_defaults(func=cmd_decrypt)

    # share
    s = sub.add_parser("share", help="Build a shareable link for a record")
    s.add_argument("record", help="Record JSON file, or - for stdin")
    s.add_argument("--password", help="Protect the link with a password")
    s.add_argument("--base-url", help="Override REQUIFORM_BASE_URL")
    s.add_argument("--output", "-o")
    s.set_defaults(func=cmd_share)

    # open
    o = sub.add_parser("open", help="Read the record carried by a link")
    o.add_argument("url")
    o.add_argument("--password", help="Password for encrypted links")
    o.add_argument("--output", "-o")
    o.set_defaults(func=cmd_open)

    # paste
    pa = sub.add_parser("paste", help="Import pasted 'Key: value' text")
    pa.add_argument("input", help="Text file, or - for stdin")
    pa.add_argument("--text", action="store_true", help="Print normalised text instead of JSON")
    pa.add_argument("--output", "-o")
    pa.set_defaults(func=cmd_paste)

    return p

def main(argv: Optional[Sequence[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    level = (args.log_level or Settings.load().LOG_LEVEL).upper()
    logging.basicConfig(level=getattr(logging, level, logging.WARNING), format="%(levelname)s %(name)s: %(message)s")
    try:
        args.func(args)
    except RequiFormError as e:
        logger.debug(f"{args.cmd} failed", exc_info=True)
        raise SystemExit(f"❌ {e}")
    except OSError as e:
        raise SystemExit(f"❌ {e}")

if __name__ == "__main__":
    main()
