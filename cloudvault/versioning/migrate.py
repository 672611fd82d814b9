"""Upgrade every legacy (unversioned) file in a filesystem Version Store.

Usage:
    python -m cloudvault.versioning.migrate --root /var/lib/cloudvault [--dry-run]
    python -m cloudvault.versioning.migrate --root DIR --import-legacy OLD_DATA_DIR

``--import-legacy`` reads the old one-list-per-tenant layout
(``OLD_DATA_DIR/<tenant>/files.json``) and inserts each record into the store
before the upgrade pass runs.
"""
from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field

from cloudvault.common.errors import CloudVaultError
from cloudvault.common.identity import validate_tenant_id
from cloudvault.version_store.errors import UnreadableRecord
from cloudvault.version_store.models import UnversionedFile, VersionedFile, parse_stored_file, upgrade_to_versioned
from cloudvault.version_store.repository import FilesystemVersionStore, VersionStore
from cloudvault.versioning.models import MIGRATION_COMMENT

logger = logging.getLogger(__name__)


class MigrationSummary(BaseModel):
    tenants_processed: int = 0
    files_imported: int = 0
    files_migrated: int = 0
    already_versioned: int = 0
    failures: List[str] = Field(default_factory=list)


def migrate_store(store: VersionStore, dry_run: bool = False, summary: Optional[MigrationSummary] = None) -> MigrationSummary:
    summary = summary or MigrationSummary()
    for tenant_id in store.list_tenants():
        summary.tenants_processed += 1
        migrated = 0

        def unreadable(ref: str, exc: Exception, tenant: str = tenant_id) -> None:
            logger.error("Cannot read %s/%s: %s", tenant, ref, exc)
            summary.failures.append(f"{tenant}/{ref}: {UnreadableRecord.code}")

        for file in store.list_by_tenant(tenant_id, on_unreadable=unreadable):
            if not isinstance(file, UnversionedFile):
                summary.already_versioned += 1
                continue
            if not dry_run:
                try:
                    store.mutate(
                        tenant_id,
                        file.id,
                        lambda stored, tenant=tenant_id: upgrade_to_versioned(stored, tenant, comment=MIGRATION_COMMENT),
                    )
                except CloudVaultError as exc:
                    logger.error("Failed to migrate %s/%s: %s", tenant_id, file.id, exc)
                    summary.failures.append(f"{tenant_id}/{file.id}: {exc.code}")
                    continue
            migrated += 1
        summary.files_migrated += migrated
        if migrated:
            logger.info("%s %s files for tenant %s", "Would migrate" if dry_run else "Migrated", migrated, tenant_id)
        else:
            logger.info("No files to migrate for tenant %s", tenant_id)
    return summary


def import_legacy_tree(
    store: VersionStore, legacy_root: Path, dry_run: bool = False, summary: Optional[MigrationSummary] = None
) -> MigrationSummary:
    summary = summary or MigrationSummary()
    for tenant_dir in sorted(p for p in legacy_root.iterdir() if p.is_dir()):
        listing = tenant_dir / "files.json"
        if not listing.exists():
            continue
        try:
            tenant_id = validate_tenant_id(tenant_dir.name)
        except ValueError as exc:
            logger.warning("Skipping %s: %s", tenant_dir, exc)
            summary.failures.append(f"{tenant_dir.name}: invalid tenant id")
            continue
        for raw in json.loads(listing.read_text(encoding="utf-8")):
            record_id = raw.get("id", "?")
            try:
                file = parse_stored_file(raw, tenant_id=tenant_id)
                if isinstance(file, VersionedFile):
                    # Older restores left the mirrored fields stale; the active version wins.
                    file.sync_mirror()
                if not dry_run:
                    store.insert(tenant_id, file)
            except (CloudVaultError, ValueError) as exc:
                logger.error("Failed to import %s/%s: %s", tenant_id, record_id, exc)
                summary.failures.append(f"{tenant_id}/{record_id}: {getattr(exc, 'code', 'invalid_record')}")
                continue
            summary.files_imported += 1
    return summary


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Convert legacy files to the versioned format")
    parser.add_argument("--root", type=Path, required=True, help="Filesystem Version Store root")
    parser.add_argument("--import-legacy", type=Path, default=None, help="Old data dir with <tenant>/files.json")
    parser.add_argument("--dry-run", action="store_true", help="Report what would change without writing")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    store = FilesystemVersionStore(args.root)
    summary = MigrationSummary()
    if args.import_legacy:
        import_legacy_tree(store, args.import_legacy, dry_run=args.dry_run, summary=summary)
    migrate_store(store, dry_run=args.dry_run, summary=summary)
    print(json.dumps(summary.model_dump(), indent=2))
    return 1 if summary.failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
