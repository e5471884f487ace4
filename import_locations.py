"""
Location import from an Excel or CSV file.
Expected columns: name, latitude, longitude, location_type
Optional columns: radius_meters (default 100), address, notes
"""
import sys
import logging

import pandas as pd

from config import LOCATION_TYPES, DEFAULT_RADIUS_M
from database import init_db
from locations import bulk_create_locations, validate_location

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ['name', 'latitude', 'longitude', 'location_type']
OPTIONAL_COLUMNS = ['radius_meters', 'address', 'notes']


def read_locations_file(path):
    """
    Reads the file into a DataFrame with normalised column names.

    Raises:
        ValueError: required columns are missing.
    """
    if path.lower().endswith('.csv'):
        df = pd.read_csv(path)
    else:
        df = pd.read_excel(path)

    df.columns = [str(col).strip().lower().replace(' ', '_') for col in df.columns]
    missing = [col for col in REQUIRED_COLUMNS if col not in df.columns]
    if missing:
        raise ValueError(f"Missing columns: {', '.join(missing)} (found: {', '.join(df.columns)})")

    for col in OPTIONAL_COLUMNS:
        if col not in df.columns:
            df[col] = None
    df['radius_meters'] = df['radius_meters'].fillna(DEFAULT_RADIUS_M)
    df['location_type'] = df['location_type'].astype(str).str.strip().str.lower()
    return df[REQUIRED_COLUMNS + OPTIONAL_COLUMNS]


def _to_rows(df):
    rows = []
    for record in df.to_dict('records'):
        rows.append({key: (None if pd.isna(value) else value) for key, value in record.items()})
    return rows


def import_locations(path, dry_run=False):
    """
    Imports locations from a file, one row at a time.

    Returns:
        list of {name, id, success, error}, one per row, in file order.
    """
    print(f"Reading file: {path}")
    rows = _to_rows(read_locations_file(path))

    if dry_run:
        results = []
        for row in rows:
            try:
                validate_location(row['name'], row['location_type'], row['latitude'],
                                  row['longitude'], row['radius_meters'])
                results.append({'name': row['name'], 'id': None, 'success': True, 'error': None})
            except (TypeError, ValueError) as e:
                results.append({'name': row['name'], 'id': None, 'success': False, 'error': str(e)})
    else:
        results = bulk_create_locations(rows)

    for line, result in enumerate(results, start=2):
        if not result['success']:
            print(f"⚠️ Line {line} ({result['name']}): {result['error']}")

    ok = sum(1 for r in results if r['success'])
    verb = "valid" if dry_run else "imported"
    print(f"\n✓ {ok}/{len(results)} locations {verb}.")
    return results


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    args = [a for a in sys.argv[1:] if not a.startswith('--')]
    if not args:
        print("Usage: python import_locations.py <file.xlsx|csv> [--dry-run]")
        print("\nExpected file format:")
        print("  Columns: name, latitude, longitude, location_type[, radius_meters, address, notes]")
        print(f"  Valid types: {', '.join(LOCATION_TYPES)}")
        sys.exit(1)

    init_db()
    import_locations(args[0], dry_run='--dry-run' in sys.argv)
