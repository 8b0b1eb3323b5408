"""Tests for assigning a freelancer and resolving bids"""

import pytest

from app import db, Bid, Job, Notification
from errors import ConflictError, NotFoundError, ValidationError


@pytest.fixture
def resolver(services):
    return services.bid_resolver


def add_bid(job, freelancer, amount=900.0):
    bid = Bid(job_id=job.id, freelancer_id=freelancer.id, bid_amount=amount, status='pending')
    db.session.add(bid)
    db.session.commit()
    return bid


def test_assign_accepts_one_bid_and_rejects_the_rest(resolver, make_user, make_job, sent_emails):
    client = make_user('client')
    chosen = make_user('freelancer', email='chosen@example.com')
    other = make_user('freelancer')
    job = make_job(client, status='approved')
    chosen_bid = add_bid(job, chosen)
    other_bid = add_bid(job, other)

    resolver.assign(job.id, chosen.id)
    db.session.expire_all()

    assert db.session.get(Bid, chosen_bid.id).status == 'accepted'
    assert db.session.get(Bid, other_bid.id).status == 'rejected'
    job = db.session.get(Job, job.id)
    assert job.status == 'in_progress'
    assert job.assigned_freelancer_id == chosen.id

    notification = Notification.query.filter_by(user_id=chosen.id).one()
    assert notification.type == 'job_assigned'
    sent_emails.assert_called_once()
    assert sent_emails.call_args[0][0] == 'chosen@example.com'


def test_bids_on_other_jobs_are_untouched(resolver, make_user, make_job):
    client = make_user('client')
    freelancer = make_user('freelancer')
    rival = make_user('freelancer')
    job = make_job(client, status='approved')
    elsewhere = make_job(client, status='approved')
    untouched = add_bid(elsewhere, rival)

    resolver.assign(job.id, freelancer.id)
    db.session.expire_all()

    assert db.session.get(Bid, untouched.id).status == 'pending'


def test_assign_without_bid_rejects_everyone(resolver, make_user, make_job):
    client = make_user('client')
    bidder = make_user('freelancer')
    outsider = make_user('freelancer')
    job = make_job(client, status='approved')
    bid = add_bid(job, bidder)

    resolver.assign(job.id, outsider.id)
    db.session.expire_all()

    assert db.session.get(Bid, bid.id).status == 'rejected'
    assert Bid.query.filter_by(job_id=job.id, status='accepted').count() == 0
    assert db.session.get(Job, job.id).assigned_freelancer_id == outsider.id


def test_reassign_leaves_single_accepted_bid(resolver, make_user, make_job):
    client = make_user('client')
    first = make_user('freelancer')
    second = make_user('freelancer')
    job = make_job(client, status='approved')
    add_bid(job, first)
    add_bid(job, second)

    resolver.assign(job.id, first.id)
    resolver.assign(job.id, second.id)
    db.session.expire_all()

    accepted = Bid.query.filter_by(job_id=job.id, status='accepted').all()
    assert [b.freelancer_id for b in accepted] == [second.id]


@pytest.mark.parametrize('freelancer_id,code', [
    (None, 'MISSING_FREELANCER_ID'),
    ('9', 'INVALID_FREELANCER_ID'),
    (True, 'INVALID_FREELANCER_ID'),
])
def test_assign_validates_freelancer_id(resolver, make_user, make_job, freelancer_id, code):
    job = make_job(make_user('client'), status='approved')
    with pytest.raises(ValidationError) as excinfo:
        resolver.assign(job.id, freelancer_id)
    assert excinfo.value.error_code == code


def test_assign_unknown_job_or_freelancer(resolver, make_user, make_job):
    freelancer = make_user('freelancer')
    with pytest.raises(NotFoundError):
        resolver.assign(9999, freelancer.id)

    job = make_job(make_user('client'), status='approved')
    with pytest.raises(NotFoundError) as excinfo:
        resolver.assign(job.id, 9999)
    assert excinfo.value.error_code == 'FREELANCER_NOT_FOUND'


def test_assign_terminal_job_rejected(resolver, make_user, make_job):
    freelancer = make_user('freelancer')
    job = make_job(make_user('client'), status='cancelled')
    bid = add_bid(job, freelancer)

    with pytest.raises(ConflictError):
        resolver.assign(job.id, freelancer.id)
    db.session.expire_all()

    assert db.session.get(Bid, bid.id).status == 'pending'
    assert db.session.get(Job, job.id).status == 'cancelled'
