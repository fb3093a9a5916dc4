from __future__ import annotations

import argparse
import logging
import sys

from sqlalchemy.exc import SQLAlchemyError

from procurement.config import settings
from procurement.services.cascade_audit_service import (
    create_read_only_engine,
    read_only_sessionmaker,
    run_audit,
    write_report,
)

logger = logging.getLogger('procurement.audit_cascade_integrity')


def dry_run_enabled(raw: str | None) -> bool:
    return raw == 'true'


def run(*, output: str, database_url: str, dry_run: str | None) -> int:
    if not dry_run_enabled(dry_run):
        logger.error('DRY_RUN must be set to "true" to run this audit; refusing to connect')
        return 1

    try:
        engine = create_read_only_engine(database_url)
    except SQLAlchemyError as exc:
        logger.error('Invalid audit database URL: %s', exc)
        return 1

    factory = read_only_sessionmaker(engine)
    try:
        with factory() as db:
            report = run_audit(db, dry_run=True)
            # Nothing is written; release the read transaction explicitly.
            db.rollback()
    except SQLAlchemyError as exc:
        logger.error('Cascade audit failed: %s', exc)
        return 1
    finally:
        engine.dispose()

    if not report.findings:
        logger.info('No problematic PRs found; all cascade integrity checks pass')
    path = write_report(report, output)
    print(f'Cascade integrity audit complete: records={len(report.findings)}, report={path}')
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description='Read-only audit of Order/PR rows whose legacy and unified shipment statuses disagree.'
    )
    parser.add_argument(
        '--output',
        default=settings.audit_report_path,
        help='Where to write the JSON report (default: %(default)s).',
    )
    parser.add_argument(
        '--database-url',
        default=None,
        help='Override AUDIT_DATABASE_URL / DATABASE_URL for this run.',
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=settings.log_level.upper(),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
    )
    database_url = settings.normalize_url(args.database_url) if args.database_url else settings.audit_database_url_normalized
    code = run(output=args.output, database_url=database_url, dry_run=settings.dry_run)
    if code:
        sys.exit(code)


if __name__ == '__main__':
    main()
