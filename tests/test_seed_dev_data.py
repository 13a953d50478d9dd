from sqlalchemy import func, select

from models.chat import ChatMessage
from models.user import User
from scripts.seed_dev_data import ADMIN_EMAIL, seed_dev_data
from services.entitlement_service import check_entitlement


def _user(db_session, email: str) -> User:
    return db_session.execute(select(User).where(User.email == email)).scalar_one()


def test_seeded_accounts_cover_each_entitlement_state(db_session) -> None:
    report = seed_dev_data(db_session)

    assert len(report.created) == 4
    assert _user(db_session, ADMIN_EMAIL).role == "admin"
    assert check_entitlement(db_session, _user(db_session, "test1@example.com").id).allowed is True
    assert check_entitlement(db_session, _user(db_session, "test2@example.com").id).allowed is False

    subscriber = _user(db_session, "subscriber@example.com")
    assert subscriber.subscription_status == "active"
    assert subscriber.subscriptions[0].status == "active"
    assert check_entitlement(db_session, subscriber.id).allowed is True


def test_seed_is_rerunnable(db_session) -> None:
    seed_dev_data(db_session)
    again = seed_dev_data(db_session)

    assert again.created == []
    assert len(again.skipped) == 4
    assert db_session.execute(select(func.count(ChatMessage.id))).scalar_one() == 4
