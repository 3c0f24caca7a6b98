"""Load books from a CSV export into the catalog.

Expected columns: isbn, title, author, total_copies (optional: publisher,
category, available_copies). Rows without an ISBN, title or author, and rows
whose ISBN is already catalogued, are skipped.

    python import_books.py books.csv
"""
import csv
import logging
import sys

from app import create_app
from errors import LibraryError
from extensions import atomic
from catalog import CatalogService

logger = logging.getLogger("import_books")


def import_books(path, catalog=None):
    catalog = catalog or CatalogService()
    count = 0
    skipped = 0
    with open(path, 'r', encoding='utf-8') as file:
        reader = csv.DictReader(file)
        for row in reader:
            data = {k: (v or '').strip() for k, v in row.items() if k}
            data.setdefault('total_copies', '1')
            if not data.get('total_copies'):
                data['total_copies'] = '1'
            if not data.get('available_copies'):
                data.pop('available_copies', None)
            try:
                with atomic():
                    catalog.create(data)
            except LibraryError as e:
                logger.info("skipping %s: %s", data.get('isbn') or data.get('title'), e.message)
                skipped += 1
                continue
            count += 1
    return count, skipped


if __name__ == "__main__":
    csv_file = sys.argv[1] if len(sys.argv) > 1 else 'books.csv'
    app = create_app()
    with app.app_context():
        count, skipped = import_books(csv_file)
    print(f"Imported {count} books into the database.")
    if skipped > 0:
        print(f"Skipped {skipped} books (missing data or duplicates).")
