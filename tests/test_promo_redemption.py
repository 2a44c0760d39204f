"""Tests for promo code redemption."""

from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import create_engine, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from app.db.base import Base
from app.models import PromoCode, Subscription
from app.services import promo_redemption
from app.services.promo_redemption import (
    MSG_ALREADY_PREMIUM,
    MSG_APPLY_FAILED,
    MSG_EXPIRED,
    MSG_INVALID_CODE,
    MSG_LIMIT_REACHED,
    MSG_MISSING_CODE,
    MSG_UNAUTHORIZED,
    add_months,
    create_promo_code,
    last_redeemable_moment,
    normalize_promo_code,
    redeem_promo_code,
)
from app.services.subscription_store import get_subscription

NOW = datetime(2026, 3, 15, 12, 0, 0)


class TestRedeemPromoCode:
    """Happy path and each rejection."""

    def test_duration_code_grants_promo(self, db_session: Session, make_promo, user_id: str) -> None:
        promo = make_promo("SUMMER25", duration_months=3, max_uses=100)

        result = redeem_promo_code(db_session, user_id, "summer25", now=NOW)

        assert result.success is True
        assert result.status_code == 200
        assert "3 months" in result.message
        assert result.expires_at == datetime(2026, 6, 15, 12, 0, 0)

        db_session.refresh(promo)
        assert promo.current_uses == 1

        subscription = get_subscription(db_session, user_id, NOW)
        assert subscription.tier == "promo"
        assert subscription.status == "active"
        assert subscription.promo_code == "SUMMER25"
        assert subscription.expires_at == datetime(2026, 6, 15, 12, 0, 0)

    def test_single_month_message(self, db_session: Session, make_promo, user_id: str) -> None:
        make_promo("TRIAL", duration_months=1)

        result = redeem_promo_code(db_session, user_id, "TRIAL", now=NOW)

        assert result.message == "Success! You now have Premium access for 1 month"

    def test_unlimited_code_never_expires(self, db_session: Session, make_promo, user_id: str) -> None:
        make_promo("FOUNDERS", type="unlimited", duration_months=None)

        result = redeem_promo_code(db_session, user_id, "  founders ", now=NOW)

        assert result.success is True
        assert result.expires_at is None
        assert "lifetime" in result.message
        assert get_subscription(db_session, user_id, NOW + timedelta(days=3650)).is_premium is True

    def test_requires_user(self, db_session: Session, make_promo) -> None:
        make_promo()

        result = redeem_promo_code(db_session, None, "SUMMER25", now=NOW)

        assert (result.success, result.message, result.status_code) == (False, MSG_UNAUTHORIZED, 401)

    @pytest.mark.parametrize("raw_code", [None, "", "   ", 12345, ["SUMMER25"]])
    def test_requires_code(self, db_session: Session, user_id: str, raw_code) -> None:
        result = redeem_promo_code(db_session, user_id, raw_code, now=NOW)

        assert (result.success, result.message, result.status_code) == (False, MSG_MISSING_CODE, 400)

    def test_active_premium_user_rejected(
        self, db_session: Session, make_promo, make_subscription, user_id: str
    ) -> None:
        promo = make_promo()
        make_subscription(tier="premium", stripe_subscription_id="sub_1")

        result = redeem_promo_code(db_session, user_id, "SUMMER25", now=NOW)

        assert result.message == MSG_ALREADY_PREMIUM
        db_session.refresh(promo)
        assert promo.current_uses == 0

    def test_active_promo_user_rejected(
        self, db_session: Session, make_promo, make_subscription, user_id: str
    ) -> None:
        make_promo()
        make_subscription(tier="promo", expires_at=NOW + timedelta(days=5))

        assert redeem_promo_code(db_session, user_id, "SUMMER25", now=NOW).message == MSG_ALREADY_PREMIUM

    def test_lapsed_promo_user_may_redeem_again(
        self, db_session: Session, make_promo, make_subscription, user_id: str
    ) -> None:
        make_promo()
        make_subscription(tier="promo", promo_code="OLDCODE", expires_at=NOW - timedelta(days=1))

        result = redeem_promo_code(db_session, user_id, "SUMMER25", now=NOW)

        assert result.success is True
        assert get_subscription(db_session, user_id, NOW).promo_code == "SUMMER25"

    def test_cancelled_premium_user_may_redeem(
        self, db_session: Session, make_promo, make_subscription, user_id: str
    ) -> None:
        make_promo()
        make_subscription(tier="premium", status="cancelled", stripe_customer_id="cus_1")

        result = redeem_promo_code(db_session, user_id, "SUMMER25", now=NOW)

        assert result.success is True
        subscription = get_subscription(db_session, user_id, NOW)
        assert (subscription.tier, subscription.status) == ("promo", "active")
        # Stripe identifiers survive the promo upsert
        assert subscription.stripe_customer_id == "cus_1"

    def test_unknown_code(self, db_session: Session, user_id: str) -> None:
        assert redeem_promo_code(db_session, user_id, "NOPE", now=NOW).message == MSG_INVALID_CODE

    def test_inactive_code(self, db_session: Session, make_promo, user_id: str) -> None:
        make_promo(active=False)

        assert redeem_promo_code(db_session, user_id, "SUMMER25", now=NOW).message == MSG_INVALID_CODE

    def test_duration_code_without_months_is_invalid(self, db_session: Session, make_promo, user_id: str) -> None:
        promo = make_promo("BROKEN", duration_months=None)

        result = redeem_promo_code(db_session, user_id, "BROKEN", now=NOW)

        assert result.message == MSG_INVALID_CODE
        db_session.refresh(promo)
        assert promo.current_uses == 0

    def test_expired_code(self, db_session: Session, make_promo, user_id: str) -> None:
        make_promo(expires_at=NOW - timedelta(minutes=1))

        result = redeem_promo_code(db_session, user_id, "SUMMER25", now=NOW)

        assert (result.success, result.message) == (False, MSG_EXPIRED)
        assert db_session.query(Subscription).count() == 0

    def test_code_is_redeemable_through_its_last_day(self, db_session: Session, make_promo) -> None:
        make_promo(expires_at=last_redeemable_moment(NOW.date()))

        late_evening = redeem_promo_code(db_session, "user-a", "SUMMER25", now=NOW.replace(hour=23, minute=59))
        next_day = redeem_promo_code(db_session, "user-b", "SUMMER25", now=NOW + timedelta(days=1))

        assert late_evening.success is True
        assert (next_day.success, next_day.message) == (False, MSG_EXPIRED)

    def test_failed_subscription_write_does_not_consume_a_use(
        self, db_session: Session, make_promo, user_id: str, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        promo = make_promo(max_uses=5)

        def broken_upsert(*args, **kwargs):
            raise OperationalError("INSERT INTO subscriptions", {}, Exception("connection reset"))

        monkeypatch.setattr(promo_redemption, "upsert_subscription", broken_upsert)

        result = redeem_promo_code(db_session, user_id, "SUMMER25", now=NOW)

        assert (result.success, result.message, result.status_code) == (False, MSG_APPLY_FAILED, 500)
        db_session.refresh(promo)
        assert promo.current_uses == 0


class TestUsageCap:
    """current_uses never exceeds max_uses."""

    def test_sequential_redemptions_stop_at_cap(self, db_session: Session, make_promo) -> None:
        promo = make_promo(max_uses=2)

        results = [redeem_promo_code(db_session, f"user-{i}", "SUMMER25", now=NOW) for i in range(3)]

        assert [r.success for r in results] == [True, True, False]
        assert results[2].message == MSG_LIMIT_REACHED
        db_session.refresh(promo)
        assert promo.current_uses == 2

    def test_claim_rejected_when_last_use_taken_after_precheck(
        self, db_session: Session, make_promo, user_id: str, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        promo = make_promo(max_uses=1)
        claim = promo_redemption._claim_promo_use

        def claim_after_competitor(db, promo_id, now):
            # Another redemption commits the last use between our read and our claim
            db.execute(update(PromoCode).where(PromoCode.id == promo_id).values(current_uses=1))
            db.commit()
            return claim(db, promo_id, now)

        monkeypatch.setattr(promo_redemption, "_claim_promo_use", claim_after_competitor)

        result = redeem_promo_code(db_session, user_id, "SUMMER25", now=NOW)

        assert (result.success, result.message) == (False, MSG_LIMIT_REACHED)
        db_session.refresh(promo)
        assert promo.current_uses == 1
        assert get_subscription(db_session, user_id, NOW).tier == "free"

    def test_concurrent_redemptions_never_overrun_cap(self, tmp_path) -> None:
        engine = create_engine(
            f"sqlite:///{tmp_path / 'promo_race.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        Base.metadata.create_all(bind=engine)
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

        setup = SessionLocal()
        setup.add(PromoCode(code="RACE", active=True, max_uses=3, current_uses=0, type="duration", duration_months=1))
        setup.commit()
        setup.close()

        def attempt(i: int) -> bool:
            db = SessionLocal()
            try:
                return redeem_promo_code(db, f"racer-{i}", "RACE", now=NOW).success
            finally:
                db.close()

        with ThreadPoolExecutor(max_workers=8) as pool:
            successes = sum(pool.map(attempt, range(12)))

        check = SessionLocal()
        try:
            promo = check.query(PromoCode).filter(PromoCode.code == "RACE").one()
            granted = check.query(Subscription).filter(Subscription.promo_code == "RACE").count()
        finally:
            check.close()
            engine.dispose()

        assert 1 <= successes <= 3
        assert promo.current_uses == successes
        assert granted == successes


class TestHelpers:
    @pytest.mark.parametrize(
        "start, months, expected",
        [
            (datetime(2026, 1, 31), 1, datetime(2026, 2, 28)),
            (datetime(2024, 1, 31), 1, datetime(2024, 2, 29)),
            (datetime(2026, 11, 15, 8, 30), 3, datetime(2027, 2, 15, 8, 30)),
            (datetime(2026, 3, 15), 12, datetime(2027, 3, 15)),
        ],
    )
    def test_add_months(self, start: datetime, months: int, expected: datetime) -> None:
        assert add_months(start, months) == expected

    def test_last_redeemable_moment_is_end_of_day(self) -> None:
        assert last_redeemable_moment(date(2026, 12, 31)) == datetime(2026, 12, 31, 23, 59, 59, 999999)

    @pytest.mark.parametrize("raw, expected", [(" summer25 ", "SUMMER25"), (12345, ""), (None, ""), (["X"], "")])
    def test_normalize_promo_code(self, raw, expected: str) -> None:
        assert normalize_promo_code(raw) == expected

    def test_create_promo_code_normalizes(self, db_session: Session) -> None:
        promo = create_promo_code(db_session, "  spring ", duration_months=2, max_uses=10)

        assert promo.code == "SPRING"
        assert promo.current_uses == 0
        assert promo.active is True

    def test_create_unlimited_code_drops_duration(self, db_session: Session) -> None:
        promo = create_promo_code(db_session, "vip", promo_type="unlimited", duration_months=6)

        assert promo.duration_months is None

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"code": "", "duration_months": 1},
            {"code": "X", "duration_months": None},
            {"code": "X", "duration_months": 0},
            {"code": "X", "promo_type": "forever"},
            {"code": "X", "duration_months": 1, "max_uses": 0},
        ],
    )
    def test_create_promo_code_validation(self, db_session: Session, kwargs) -> None:
        with pytest.raises(ValueError):
            create_promo_code(db_session, **kwargs)
