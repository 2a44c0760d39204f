#!/usr/bin/env python3
"""
Create a promo code.

Codes are stored uppercase and trimmed, which is also how redemption looks
them up. Run from project root:
  python scripts/create_promo_code.py SUMMER25 --months 3 --max-uses 100
  python scripts/create_promo_code.py FOUNDERS --unlimited
  python scripts/create_promo_code.py LAUNCH --months 1 --expires 2026-12-31

Requires: DATABASE_URL in environment (.env or export).
"""

import argparse
import sys
from datetime import datetime
from pathlib import Path

# Run from project root; ensure app is importable
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from sqlalchemy.exc import IntegrityError

from app.db.session import SessionLocal
from app.models.promo_code import PromoCodeType
from app.services.promo_redemption import create_promo_code, last_redeemable_moment


def _parse_date(value: str) -> datetime:
    try:
        day = datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected YYYY-MM-DD, got {value!r}")
    return last_redeemable_moment(day)


def main() -> int:
    parser = argparse.ArgumentParser(description="Create a promo code granting premium access.")
    parser.add_argument("code", help="Promo code (case-insensitive)")
    kind = parser.add_mutually_exclusive_group(required=True)
    kind.add_argument("--months", type=int, help="Grant premium for this many months")
    kind.add_argument("--unlimited", action="store_true", help="Grant lifetime premium")
    parser.add_argument("--max-uses", type=int, dest="max_uses", help="Total redemptions allowed (default: no cap)")
    parser.add_argument("--expires", type=_parse_date, help="Last day the code can be redeemed (UTC, YYYY-MM-DD)")
    parser.add_argument("--inactive", action="store_true", help="Create the code disabled")
    args = parser.parse_args()

    db = SessionLocal()
    try:
        promo = create_promo_code(
            db,
            args.code,
            promo_type=PromoCodeType.UNLIMITED.value if args.unlimited else PromoCodeType.DURATION.value,
            duration_months=args.months,
            max_uses=args.max_uses,
            expires_at=args.expires,
            active=not args.inactive,
        )
    except ValueError as e:
        print(f"ERROR: {e}")
        return 1
    except IntegrityError:
        db.rollback()
        print(f"ERROR: promo code {args.code.strip().upper()!r} already exists.")
        return 1
    finally:
        db.close()

    grant = "lifetime" if promo.type == PromoCodeType.UNLIMITED.value else f"{promo.duration_months} month(s)"
    cap = promo.max_uses if promo.max_uses is not None else "unlimited"
    print(f"Created {promo.code}: {grant}, max uses {cap}, expires {promo.expires_at or 'never'}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
