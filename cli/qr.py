"""
CLI commands for rendering record QR codes as PNG files.
"""

import json
from pathlib import Path

import click
from pydantic import ValidationError

from requiform.errors import RequiFormError
from requiform.models import ClinicalRecord
from share.qr import QrOptions, complete_qr, data_url_to_png, qr_sheet
from share.settings import Settings


def _load(record_path: str) -> ClinicalRecord:
    try:
        data = json.loads(Path(record_path).read_text(encoding="utf-8"))
        return ClinicalRecord.model_validate(data)
    except (ValueError, ValidationError) as e:
        raise click.ClickException(f"❌ Invalid record file {record_path}: {e}")


def _options(width, margin, ecc) -> QrOptions:
    return QrOptions(width=width, margin=margin, error_correction=ecc)


@click.group()
def qr():
    """QR code export for clinical records."""
    pass


@qr.command()
@click.argument("record_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--out", default="./qr_codes", help="Output directory for PNG files")
@click.option("--width", type=int, default=None, help="Fixed width in pixels (default: sized to payload)")
@click.option("--margin", type=int, default=1, show_default=True, help="Quiet zone in modules")
@click.option("--ecc", type=click.Choice(["L", "M", "Q", "H"]), default=None, help="Error correction override")
def export(record_path: str, out: str, width, margin: int, ecc):
    """
    Render the per-page codes used on the printed requisition.

    Writes patient.png, phenotype.png and, when the record has a pedigree,
    pedigree.png.

    Example:
        requiform-qr export record.json --out ./qr_codes
    """
    record = _load(record_path)
    settings = Settings.load()
    try:
        sheet = qr_sheet(record, _options(width, margin, ecc), ceiling=settings.QR_PAYLOAD_CEILING)
    except RequiFormError as e:
        raise click.ClickException(f"❌ {e}")

    out_dir = Path(out)
    out_dir.mkdir(parents=True, exist_ok=True)
    for name, data_url in sheet.items():
        path = out_dir / f"{name}.png"
        path.write_bytes(data_url_to_png(data_url))
        click.echo(f"✓ {name:<10}: {path}")


@qr.command()
@click.argument("record_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--out", default="./complete.png", help="Output PNG path")
@click.option("--width", type=int, default=None, help="Fixed width in pixels (default: sized to payload)")
@click.option("--margin", type=int, default=1, show_default=True)
@click.option("--ecc", type=click.Choice(["L", "M", "Q", "H"]), default=None)
def complete(record_path: str, out: str, width, margin: int, ecc):
    """
    Render the whole record as a single code.

    Fails when the record does not fit; use `export` for per-page codes.
    """
    record = _load(record_path)
    settings = Settings.load()
    try:
        data_url = complete_qr(record, _options(width, margin, ecc), ceiling=settings.QR_PAYLOAD_CEILING)
    except RequiFormError as e:
        raise click.ClickException(f"❌ {e}")

    output_path = Path(out)
    output_path.write_bytes(data_url_to_png(data_url))
    click.echo(f"✓ Complete record QR code generated: {output_path}")


if __name__ == "__main__":
    qr()
