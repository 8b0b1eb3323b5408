"""Tests for exactly-once payment confirmation and settlement"""

import re
from datetime import datetime
from unittest import mock

import pytest
from sqlalchemy import update
from sqlalchemy.orm.attributes import set_committed_value

from app import db, Invoice, Job, Notification, Payment, User
from errors import ConflictError, InternalError, NotFoundError, ValidationError
from payment_confirmation import (
    MANUAL_FAILURE_MESSAGE, WEBHOOK_FAILURE_MESSAGE, generate_invoice_number
)
from payment_outcome import PaymentOutcome


@pytest.fixture
def service(services):
    return services.payment_service


@pytest.fixture
def delivered_order(make_user, make_job, make_payment):
    client = make_user('client', email='client@example.com')
    freelancer = make_user('freelancer', email='writer@example.com')
    job = make_job(client, freelancer, status='delivered', amount=1000.0)
    payment = make_payment(job, mpesa_checkout_request_id='ws_CO_1')
    return client, freelancer, job, payment


def success(receipt='QKL1234ABC'):
    return PaymentOutcome.success(receipt_number=receipt, transaction_date='20250101120000', phone_number='254712345678')


def test_confirm_settles_order(service, delivered_order, sent_emails):
    client, freelancer, job, payment = delivered_order

    result = service.confirm(payment.id, success(), 'webhook')

    assert result['applied'] is True
    assert result['freelancer_amount'] == 700.00
    assert result['admin_commission'] == 300.00
    assert result['new_balance'] == 700.00

    db.session.expire_all()
    payment = db.session.get(Payment, payment.id)
    assert payment.status == 'confirmed'
    assert payment.mpesa_receipt_number == 'QKL1234ABC'
    assert payment.mpesa_transaction_date == '20250101120000'
    assert payment.confirmed_by_admin is True
    assert payment.confirmed_at is not None

    job = db.session.get(Job, job.id)
    assert job.status == 'completed'
    assert job.payment_confirmed is True

    freelancer = db.session.get(User, freelancer.id)
    assert freelancer.balance == 700.00
    assert freelancer.completed_jobs == 1

    invoice = Invoice.query.filter_by(job_id=job.id).one()
    assert invoice.amount == 1000.00
    assert invoice.freelancer_amount == 700.00
    assert invoice.admin_commission == 300.00
    assert invoice.is_paid is True
    assert invoice.status == 'paid'
    assert re.match(r'^INV-\d{8}-\d{5}$', invoice.invoice_number)

    types = {(n.user_id, n.type) for n in Notification.query.all()}
    assert (freelancer.id, 'payment_received') in types
    assert (client.id, 'order_completed') in types
    recipients = {call.args[0] for call in sent_emails.call_args_list}
    assert recipients == {'client@example.com', 'writer@example.com'}


def test_confirm_twice_is_idempotent(service, delivered_order):
    _, freelancer, job, payment = delivered_order

    service.confirm(payment.id, success(), 'webhook')
    second = service.confirm(payment.id, success(), 'poll')

    assert second['applied'] is False
    assert second['status'] == 'confirmed'
    db.session.expire_all()
    freelancer = db.session.get(User, freelancer.id)
    assert freelancer.balance == 700.00
    assert freelancer.completed_jobs == 1
    assert Invoice.query.count() == 1


def test_failure_after_success_is_ignored(service, delivered_order):
    _, _, _, payment = delivered_order

    service.confirm(payment.id, success(), 'webhook')
    result = service.confirm(payment.id, PaymentOutcome.failure('Request cancelled by user'), 'webhook')

    assert result['applied'] is False
    db.session.expire_all()
    assert db.session.get(Payment, payment.id).status == 'confirmed'


def test_failed_payment_notifies_client(service, delivered_order, sent_emails):
    client, _, job, payment = delivered_order

    result = service.confirm(payment.id, PaymentOutcome.failure('Request cancelled by user'), 'webhook')

    assert result == {'applied': True, 'payment_id': payment.id, 'status': 'failed', 'reason': 'Request cancelled by user'}
    db.session.expire_all()
    payment = db.session.get(Payment, payment.id)
    assert payment.status == 'failed'
    assert payment.mpesa_result_desc == 'Request cancelled by user'
    assert db.session.get(Job, job.id).status == 'delivered'

    notification = Notification.query.filter_by(user_id=client.id, type='payment_failed').one()
    assert notification.message == WEBHOOK_FAILURE_MESSAGE
    sent_emails.assert_called_once()
    assert sent_emails.call_args.args[0] == 'client@example.com'


def test_manual_failure_uses_manual_copy(service, delivered_order):
    client, _, _, payment = delivered_order

    service.confirm(payment.id, PaymentOutcome.failure('Code not found'), 'manual')

    notification = Notification.query.filter_by(user_id=client.id, type='payment_failed').one()
    assert notification.message == MANUAL_FAILURE_MESSAGE


def test_failure_clears_admin_confirmation(service, delivered_order):
    payment = delivered_order[3]
    payment.confirmed_by_admin = True
    db.session.commit()

    service.confirm(payment.id, PaymentOutcome.failure('Code not found'), 'manual')

    db.session.expire_all()
    payment = db.session.get(Payment, payment.id)
    assert payment.status == 'failed'
    assert payment.confirmed_by_admin is False


def test_late_success_after_failure_is_applied(service, delivered_order):
    _, freelancer, _, payment = delivered_order

    service.confirm(payment.id, PaymentOutcome.failure('DS timeout'), 'poll')
    result = service.confirm(payment.id, success(), 'webhook')

    assert result['applied'] is True
    db.session.expire_all()
    assert db.session.get(Payment, payment.id).status == 'confirmed'
    assert db.session.get(User, freelancer.id).balance == 700.00


def test_second_payment_for_settled_job_does_not_settle_again(service, delivered_order, make_payment):
    _, freelancer, job, payment = delivered_order
    service.confirm(payment.id, success(), 'webhook')

    duplicate = make_payment(db.session.get(Job, job.id), status='pending')
    result = service.confirm(duplicate.id, success('QKL9999XYZ'), 'webhook')

    assert result['applied'] is True
    assert result['invoice_number'] is None
    db.session.expire_all()
    assert db.session.get(User, freelancer.id).balance == 700.00
    assert Invoice.query.count() == 1


def test_balance_converges_with_recompute(service, services, make_user, make_job, make_payment):
    client = make_user('client')
    freelancer = make_user('freelancer', balance=12.34)
    for amount in (1000.0, 333.33, 75.5):
        job = make_job(client, freelancer, status='delivered', amount=amount)
        payment = make_payment(job)
        service.confirm(payment.id, success(f"R{job.id}"), 'webhook')

    db.session.expire_all()
    stored = db.session.get(User, freelancer.id).balance
    assert stored == services.ledger.recompute_balance(freelancer.id)


def test_cancelled_job_records_payment_without_settlement(service, make_user, make_job, make_payment):
    client = make_user('client')
    freelancer = make_user('freelancer')
    job = make_job(client, freelancer, status='cancelled')
    payment = make_payment(job)

    result = service.confirm(payment.id, success(), 'webhook')

    assert result['applied'] is True
    db.session.expire_all()
    assert db.session.get(Payment, payment.id).status == 'confirmed'
    job = db.session.get(Job, job.id)
    assert job.status == 'cancelled'
    assert job.payment_confirmed is False
    assert db.session.get(User, freelancer.id).balance == 0.0
    assert Invoice.query.count() == 0


def test_unassigned_job_records_payment_without_completing(service, make_user, make_job, make_payment):
    job = make_job(make_user('client'), status='approved')
    payment = make_payment(job)

    result = service.confirm(payment.id, success(), 'manual')

    assert result['applied'] is True
    assert result['job_status'] == 'approved'
    db.session.expire_all()
    assert db.session.get(Payment, payment.id).status == 'confirmed'
    job = db.session.get(Job, job.id)
    assert job.status == 'approved'
    assert job.payment_confirmed is False
    assert Invoice.query.count() == 0


def test_row_confirmed_elsewhere_is_not_applied_again(service, delivered_order):
    _, freelancer, _, payment = delivered_order
    assert payment.status == 'pending'

    # Another worker confirms the row while this session still holds a 'pending' read of it
    db.session.execute(
        update(Payment).where(Payment.id == payment.id).values(status='confirmed'),
        execution_options={'synchronize_session': False}
    )
    db.session.commit()
    set_committed_value(payment, 'status', 'pending')
    assert payment.__dict__['status'] == 'pending'

    result = service.confirm(payment.id, success(), 'webhook')

    assert result['applied'] is False
    assert Invoice.query.count() == 0
    db.session.expire_all()
    assert db.session.get(User, freelancer.id).balance == 0.0
    assert db.session.get(Job, delivered_order[2].id).payment_confirmed is False


def test_store_failure_on_manual_confirm_carries_the_cause(service, delivered_order):
    payment = delivered_order[3]

    with mock.patch.object(service.ledger, 'apply_settlement', side_effect=RuntimeError('disk full on ledger')):
        with pytest.raises(InternalError) as excinfo:
            service.confirm(payment.id, success(), 'manual')

    assert excinfo.value.message == 'Failed to confirm payment: disk full on ledger'
    assert excinfo.value.error_code == 'CONFIRMATION_FAILED'
    db.session.expire_all()
    assert db.session.get(Payment, payment.id).status == 'pending'
    assert Invoice.query.count() == 0


def test_store_failure_on_webhook_is_sanitised(service, delivered_order):
    payment = delivered_order[3]

    with mock.patch.object(service.ledger, 'apply_settlement', side_effect=RuntimeError('disk full on ledger')):
        with pytest.raises(InternalError) as excinfo:
            service.confirm(payment.id, success(), 'webhook')

    assert excinfo.value.message == 'Failed to confirm payment'


def test_unknown_payment(service):
    with pytest.raises(NotFoundError):
        service.confirm(9999, success(), 'webhook')


def test_unknown_source(service, delivered_order):
    with pytest.raises(ValidationError):
        service.confirm(delivered_order[3].id, success(), 'carrier-pigeon')


def test_find_by_checkout_request(service, delivered_order):
    payment = delivered_order[3]
    assert service.find_by_checkout_request('ws_CO_1').id == payment.id
    assert service.find_by_checkout_request('ws_CO_missing') is None
    assert service.find_by_checkout_request(None) is None


def test_invoice_numbers_are_sequential_per_day(app, make_user, make_job):
    client = make_user('client')
    job = make_job(client)
    now = datetime(2025, 3, 14, 9, 30)

    assert generate_invoice_number(Invoice, now) == 'INV-20250314-00001'
    db.session.add(Invoice(
        job_id=job.id, client_id=client.id, invoice_number='INV-20250314-00001',
        amount=10, freelancer_amount=7, admin_commission=3, created_at=now
    ))
    db.session.commit()
    assert generate_invoice_number(Invoice, now) == 'INV-20250314-00002'
    assert generate_invoice_number(Invoice, datetime(2025, 3, 15, 0, 1)) == 'INV-20250315-00001'


def test_mark_invoice_paid(service, make_user, make_job):
    client = make_user('client')
    freelancer = make_user('freelancer')
    job = make_job(client, freelancer)
    invoice = Invoice(
        job_id=job.id, client_id=client.id, freelancer_id=freelancer.id,
        invoice_number='INV-20250314-00007', amount=100, freelancer_amount=70, admin_commission=30
    )
    db.session.add(invoice)
    db.session.commit()

    service.mark_invoice_paid(invoice.id)
    assert invoice.is_paid is True
    assert invoice.paid_at is not None

    with pytest.raises(ConflictError) as excinfo:
        service.mark_invoice_paid(invoice.id)
    assert excinfo.value.error_code == 'ALREADY_PAID'


def test_mark_invoice_paid_errors(service, make_user, make_job):
    client = make_user('client')
    job = make_job(client)
    invoice = Invoice(
        job_id=job.id, client_id=client.id, invoice_number='INV-20250314-00008',
        amount=100, freelancer_amount=70, admin_commission=30
    )
    db.session.add(invoice)
    db.session.commit()

    with pytest.raises(NotFoundError):
        service.mark_invoice_paid(9999)
    with pytest.raises(ValidationError):
        service.mark_invoice_paid(invoice.id)
