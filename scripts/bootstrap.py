# WORKFLOW: Bootstrap script for database setup and reference data seeding.
# Used by: Initial setup, local development, deployment
# Functions:
# 1. setup_database() - Initialize database schema and tables
# 2. seed_policies() - Load reciprocal tariff and entry fee policy rows
# 3. seed_sample_entries() - Load a few tariff entries for local smoke tests
# 4. validate_setup() - Verify the database answers and seeded rows exist
#
# Bootstrap flow: Schema -> Policy seed -> Optional sample entries -> Validation -> Ready

"""
Bootstrap script for Landed Cost Duty API setup.
"""

import argparse
import logging
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from db.models import PolicyRecord, TariffCodeEntry  # noqa: E402
from db.session import check_db_connection, init_db, session_scope  # noqa: E402
from etl.duty_parser import generate_formula_by_pattern  # noqa: E402
from etl.policy_seed import fee_seed_rows, reciprocal_seed_rows, upsert_policy_records  # noqa: E402

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger(__name__)

SAMPLE_ENTRIES = [
    {"hts_number": "0101.21.0000", "description": "Purebred breeding horses", "general_rate": "Free", "unit_of_quantity": "No."},
    {"hts_number": "0201.10.5010", "description": "Bovine carcasses, fresh or chilled", "general_rate": "26.4%", "unit_of_quantity": "kg"},
    {"hts_number": "0702.00.2000", "description": "Tomatoes, fresh or chilled", "general_rate": "2.8¢/kg", "unit_of_quantity": "kg"},
    {"hts_number": "6109.10.0012", "description": "T-shirts of cotton, men's or boys'", "general_rate": "16.5%", "unit_of_quantity": "doz."},
    {"hts_number": "8471.30.0100", "description": "Portable digital automatic data processing machines", "general_rate": "Free", "unit_of_quantity": "No."},
]


def setup_database() -> None:
    """Create all tables."""
    try:
        init_db()
        logger.info("Database schema ready")
    except Exception as e:
        logger.error(f"Database setup failed: {e}")
        raise


def seed_policies() -> int:
    try:
        with session_scope() as session:
            return upsert_policy_records(session, reciprocal_seed_rows() + fee_seed_rows())
    except Exception as e:
        logger.error(f"Policy seed failed: {e}")
        raise


def seed_sample_entries(version: str) -> int:
    """Insert sample entries with pattern-generated formulas; existing rows are left alone."""
    inserted = 0
    try:
        with session_scope() as session:
            for sample in SAMPLE_ENTRIES:
                exists = (
                    session.query(TariffCodeEntry)
                    .filter(TariffCodeEntry.hts_number == sample["hts_number"], TariffCodeEntry.version == version)
                    .first()
                )
                if exists:
                    continue
                parsed = generate_formula_by_pattern(sample["general_rate"], sample["unit_of_quantity"])
                session.add(
                    TariffCodeEntry(
                        version=version,
                        rate_formula=parsed["formula"] if parsed else None,
                        **sample,
                    )
                )
                inserted += 1
    except Exception as e:
        logger.error(f"Sample entry seed failed: {e}")
        raise
    logger.info(f"Inserted {inserted} sample tariff entries for version {version}")
    return inserted


def validate_setup() -> bool:
    if not check_db_connection():
        logger.error("Database connection check failed")
        return False

    with session_scope() as session:
        policy_count = session.query(PolicyRecord).filter(PolicyRecord.is_active.is_(True)).count()

    logger.info(f"Active policy records: {policy_count}")
    return policy_count > 0


def main():
    parser = argparse.ArgumentParser(description="Bootstrap the Landed Cost Duty API database")
    parser.add_argument("--skip-seed", action="store_true", help="Only create the schema")
    parser.add_argument("--sample-entries", action="store_true", help="Load sample tariff entries")
    parser.add_argument("--version", default="2025", help="Schedule version for sample entries")
    args = parser.parse_args()

    logger.info("Starting bootstrap")
    setup_database()

    if not args.skip_seed:
        seed_policies()
    if args.sample_entries:
        seed_sample_entries(args.version)

    if args.skip_seed or validate_setup():
        logger.info("Bootstrap completed successfully")
        return 0

    logger.error("Bootstrap validation failed")
    return 1


if __name__ == "__main__":
    sys.exit(main())
