"""Turn an uploaded CSV file into contact import rows.

The file must start with a header row. Recognised columns are ``name``,
``email``, ``phone``, ``company``, ``tags`` and ``notes``; ``tags`` holds
tag ids separated by ``;``. Other columns are ignored.
"""

import csv
import io

from . import schemas
from .errors import ValidationError

FIELDS = ("name", "email", "phone", "company", "notes")
TAG_SEPARATOR = ";"


def decode_upload(raw: bytes) -> str:
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise ValidationError("CSV file must be UTF-8 encoded")


def parse_rows(text: str) -> list[schemas.ImportRow]:
    """
    Parse CSV text into import rows, skipping blank lines.

    Raises:
        ValidationError: If the file has no header row or is not valid CSV.
    """
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames:
        raise ValidationError("CSV file has no header row")
    columns = {name.strip().lower(): name for name in reader.fieldnames if name}

    rows = []
    try:
        for record in reader:
            values = {
                field: (record.get(columns[field]) or "").strip()
                for field in FIELDS
                if field in columns
            }
            raw_tags = ""
            if "tags" in columns:
                raw_tags = record.get(columns["tags"]) or ""
            if not any(values.values()) and not raw_tags.strip():
                continue
            tags = [tag.strip() for tag in raw_tags.split(TAG_SEPARATOR) if tag.strip()]
            rows.append(schemas.ImportRow(tags=tags, **values))
    except csv.Error as exc:
        raise ValidationError(f"Error parsing CSV: {exc}")
    return rows
