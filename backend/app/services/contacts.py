from io import StringIO
from typing import List

import pandas as pd

TARGET_COLUMNS = ("target_id", "lead_id", "email")


def parse_contact_file(content: str) -> List[str]:
    """
    Read target ids out of a CSV contact file. The first of `target_id`,
    `lead_id` or `email` present (case-insensitive) is used; blanks and
    repeats are dropped, original order is kept.
    """
    if not content or not content.strip():
        return []
    try:
        df = pd.read_csv(StringIO(content), dtype=str)
    except Exception as e:
        raise ValueError(f"Invalid CSV format: {e}")

    df.columns = [str(h).strip().lower() for h in df.columns]
    column = next((c for c in TARGET_COLUMNS if c in df.columns), None)
    if column is None:
        raise ValueError(f"CSV must contain one of these columns: {', '.join(TARGET_COLUMNS)}")

    values = df[column].dropna().astype(str).str.strip()
    values = values[values != ""]
    return list(dict.fromkeys(values.tolist()))
