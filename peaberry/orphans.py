"""
Orphan detection job.

Compares the identity provider's live users with locally linked rows and
flags the ones that disappeared upstream. Meant to run on a fixed schedule
(cron); it never deletes anything, cleanup stays an admin decision.

Usage:
  python -m peaberry.orphans [--dry-run]
"""
import argparse
import logging
import sys

from . import crud, models
from .config import get_settings
from .db import create_db_engine, init_db, make_session_factory
from .identity import build_identity_provider
from .sync import detect_orphans

logger = logging.getLogger(__name__)


def main(argv=None):
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--dry-run", action="store_true", help="Report without flagging anything")
    args = parser.parse_args(argv)

    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper())
    provider = build_identity_provider(settings)
    engine = create_db_engine(settings.database_url)
    init_db(engine)
    session_factory = make_session_factory(engine)

    with session_factory() as db:
        if args.dry_run:
            live = provider.list_user_uids()
            linked = crud.list_users(db, identity_status=models.LINKED)
            missing = [u.id for u in linked if u.provider_uid not in live] if live else []
            print(f"would flag {len(missing)} user(s): {missing}")
            return 0
        result = detect_orphans(db, provider)
    print(f"checked {result.checked} linked user(s), flagged {len(result.newly_orphaned)}: {result.newly_orphaned}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
