"""
Shared pytest fixtures

DATABASE_URL must point at in-memory SQLite before app is imported, since
app.py reads its configuration at import time.
"""

import os
import tempfile
from datetime import datetime, timedelta
from unittest import mock

os.environ['DATABASE_URL'] = 'sqlite:///:memory:'
os.environ['SESSION_SECRET'] = 'test-session-secret'
os.environ['CRON_SECRET'] = 'test-cron-secret'
os.environ['ENABLE_SCHEDULER'] = 'false'
os.environ['PAYMENT_LOG_DIR'] = tempfile.mkdtemp(prefix='tasklynk-payment-logs-')

import pytest

import app as app_module
from app import app as flask_app, db, User, Job, Payment
from email_service import email_service


@pytest.fixture
def app():
    flask_app.config['TESTING'] = True
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def sent_emails():
    """Record outgoing email instead of calling SendGrid"""
    with mock.patch.object(email_service, 'send_single_email', return_value=(True, 'sent', 200)) as send:
        yield send


@pytest.fixture
def make_user(app):
    counter = {'n': 0}

    def _make_user(role='client', name=None, **fields):
        counter['n'] += 1
        n = counter['n']
        user = User(
            email=fields.pop('email', f"{role}{n}@example.com"),
            name=name or f"{role.capitalize()} {n}",
            role=role,
            approved=True,
            **fields
        )
        db.session.add(user)
        db.session.commit()
        return user

    return _make_user


@pytest.fixture
def make_job(app):
    counter = {'n': 0}

    def _make_job(client, freelancer=None, status='pending', amount=1000.0, **fields):
        counter['n'] += 1
        n = counter['n']
        job = Job(
            display_id=fields.pop('display_id', f"Order#{datetime.utcnow().year}{n:09d}"),
            order_number=fields.pop('order_number', f"Test-{n}"),
            client_id=client.id,
            assigned_freelancer_id=freelancer.id if freelancer else None,
            title=fields.pop('title', f"Essay {n}"),
            instructions='Write it well',
            work_type='essay',
            amount=amount,
            calculated_price=amount,
            deadline=datetime.utcnow() + timedelta(days=3),
            status=status,
            **fields
        )
        db.session.add(job)
        db.session.commit()
        return job

    return _make_job


@pytest.fixture
def make_payment(app):
    def _make_payment(job, amount=None, status='pending', payment_method='mpesa', **fields):
        payment = Payment(
            job_id=job.id,
            client_id=job.client_id,
            freelancer_id=job.assigned_freelancer_id,
            amount=job.amount if amount is None else amount,
            payment_method=payment_method,
            status=status,
            **fields
        )
        db.session.add(payment)
        db.session.commit()
        return payment

    return _make_payment


@pytest.fixture
def login(client):
    def _login(user):
        with client.session_transaction() as sess:
            sess['user_id'] = user.id
    return _login


@pytest.fixture
def services(app):
    """The service objects app.py wires together"""
    return app_module
