"""Tests for freelancer balance recompute and reconciliation"""

import pytest

from app import db, User
from errors import ConflictError, NotFoundError


@pytest.fixture
def ledger(services):
    return services.ledger


def test_recompute_counts_only_completed_and_paid_jobs(ledger, make_user, make_job):
    client = make_user('client')
    freelancer = make_user('freelancer')
    make_job(client, freelancer, status='completed', amount=1000, payment_confirmed=True)
    make_job(client, freelancer, status='completed', amount=500, payment_confirmed=False)
    make_job(client, freelancer, status='delivered', amount=800)
    make_job(client, make_user('freelancer'), status='completed', amount=2000, payment_confirmed=True)

    assert ledger.recompute_balance(freelancer.id) == 700.00


def test_apply_settlement_overwrites_with_recompute(ledger, make_user, make_job):
    client = make_user('client')
    freelancer = make_user('freelancer', balance=55.0)
    make_job(client, freelancer, status='completed', amount=1000, payment_confirmed=True)

    new_balance = ledger.apply_settlement(freelancer, 700.0)
    db.session.commit()

    # The stale 55.00 is discarded in favour of the derived value
    assert new_balance == 700.00
    assert freelancer.balance == 700.00
    assert freelancer.earned == 700.00
    assert freelancer.total_earnings == 700.00
    assert freelancer.completed_jobs == 1


def test_reconcile_all_corrects_drift(ledger, make_user, make_job):
    client = make_user('client')
    drifted = make_user('freelancer', balance=999.0)
    correct = make_user('freelancer', balance=350.0)
    make_job(client, drifted, status='completed', amount=100, payment_confirmed=True)
    make_job(client, correct, status='completed', amount=500, payment_confirmed=True)

    result = ledger.reconcile_all()

    assert result['updated'] == 2
    assert result['drifted'] == 1
    assert db.session.get(User, drifted.id).balance == 70.00
    assert db.session.get(User, correct.id).balance == 350.00
    details = {d['freelancer_id']: d for d in result['details']}
    assert details[drifted.id] == {
        'freelancer_id': drifted.id,
        'new_balance': 70.00,
        'job_count': 1,
        'total_amount': 100.00
    }


def test_reconcile_all_ignores_clients_and_admins(ledger, make_user):
    make_user('client', balance=10.0)
    make_user('admin')
    result = ledger.reconcile_all()
    assert result['updated'] == 0


def test_completed_orders_summary(ledger, make_user, make_job):
    client = make_user('client')
    freelancer = make_user('freelancer')
    make_job(client, freelancer, status='completed', amount=1000, payment_confirmed=True)
    make_job(client, freelancer, status='completed', amount=500, payment_confirmed=True)

    summary = ledger.completed_orders_summary(freelancer.id)

    assert summary == {
        'freelancer_id': freelancer.id,
        'completed_orders_balance': 1050.00,
        'completed_orders_count': 2,
        'average_order_value': 525.00
    }


def test_completed_orders_summary_without_orders(ledger, make_user):
    freelancer = make_user('freelancer')
    summary = ledger.completed_orders_summary(freelancer.id)
    assert summary['completed_orders_balance'] == 0.0
    assert summary['average_order_value'] == 0.0


def test_completed_orders_summary_errors(ledger, make_user):
    client = make_user('client')
    with pytest.raises(NotFoundError):
        ledger.completed_orders_summary(9999)
    with pytest.raises(ConflictError):
        ledger.completed_orders_summary(client.id)
