import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from humanoid_orders.database import run_in_transaction


def test_lost_race_is_retried_on_a_fresh_session(mocker):
    sessions = [mocker.Mock(), mocker.Mock()]
    factory = mocker.Mock(side_effect=sessions)
    work = mocker.Mock(side_effect=[StaleDataError("version mismatch"), "done"])

    assert run_in_transaction(factory, work) == "done"

    assert work.call_args_list == [mocker.call(sessions[0]), mocker.call(sessions[1])]
    sessions[0].rollback.assert_called_once()
    sessions[0].commit.assert_not_called()
    sessions[1].commit.assert_called_once()
    assert all(s.close.called for s in sessions)


def test_retries_give_up_after_the_limit(mocker):
    factory = mocker.Mock(side_effect=lambda: mocker.Mock())
    work = mocker.Mock(side_effect=IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed")))

    with pytest.raises(IntegrityError):
        run_in_transaction(factory, work, retries=3)

    assert work.call_count == 3


def test_other_errors_roll_back_without_retry(mocker):
    db = mocker.Mock()
    work = mocker.Mock(side_effect=ValueError("boom"))

    with pytest.raises(ValueError):
        run_in_transaction(mocker.Mock(return_value=db), work)

    assert work.call_count == 1
    db.rollback.assert_called_once()
    db.close.assert_called_once()
