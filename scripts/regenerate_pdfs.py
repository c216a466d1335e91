"""
Render and store PDFs for issued certificates that do not have one yet
(e.g. after a storage outage at issuance time).

Run: python scripts/regenerate_pdfs.py [--all] [--dry-run]
"""
from __future__ import annotations

import argparse
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.brgy import create_app
from app.brgy.db import db_session
from app.brgy.modules.certificates.models import IssuedCertificate
from app.brgy.modules.certificates.service import regenerate_document, store_artifact


def regenerate(*, include_existing: bool = False, dry_run: bool = False) -> tuple[int, int]:
    app = create_app()
    ok = failed = 0
    with app.app_context():
        s = db_session()
        storage = app.extensions["brgy_storage"]
        renderer = app.extensions["brgy_renderer"]

        q = s.query(IssuedCertificate).order_by(IssuedCertificate.id.asc())
        if not include_existing:
            q = q.filter(IssuedCertificate.pdf_storage_key.is_(None))
        docs = q.all()
        if not docs:
            print("No certificates found without PDFs.")
            return 0, 0

        print(f"Found {len(docs)} certificates to render")
        for doc in docs:
            if dry_run:
                print(f"  Would render {doc.document_number}")
                continue
            try:
                if include_existing:
                    regenerate_document(s, doc.id, renderer=renderer, storage=storage)
                else:
                    store_artifact(s, doc, renderer=renderer, storage=storage)
                s.commit()
                ok += 1
                print(f"  OK    {doc.document_number} -> {doc.pdf_storage_key}")
            except Exception as e:
                s.rollback()
                failed += 1
                print(f"  FAIL  {doc.document_number}: {e}")

    print(f"\nDone. Rendered: {ok}  Errors: {failed}")
    return ok, failed


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--all", action="store_true", help="Re-render every certificate, not just those missing a PDF")
    parser.add_argument("--dry-run", action="store_true", help="List what would be rendered and exit")
    args = parser.parse_args()
    _, failed = regenerate(include_existing=args.all, dry_run=args.dry_run)
    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
