from flask import Flask, request, jsonify, session
from flask_cors import CORS
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.exc import IntegrityError
from datetime import datetime, timedelta
from functools import wraps
from dotenv import load_dotenv
import os
import secrets

from actor import Actor, SYSTEM
from balance_ledger import BalanceLedger
from bid_resolution import BidResolver
from email_service import email_service
from errors import MarketplaceError, ValidationError, NotFoundError, ConflictError
from mpesa import format_phone, get_mpesa_client, parse_callback
from notifications import Notifier
from order_workflow import OrderWorkflow, TERMINAL_STATUSES, UNSET
from payment_confirmation import PaymentConfirmationService
from payment_logger import payment_logger, init_payment_logger
from payment_outcome import PaymentOutcome
from paystack import get_paystack_client
from settlement import round_money

load_dotenv()

app = Flask(__name__, template_folder='templates')

# Set secret key with fallback
app.secret_key = os.environ.get("SESSION_SECRET") or os.environ.get("SECRET_KEY")
if not app.secret_key:
    # In production, always set SESSION_SECRET or SECRET_KEY environment variable
    app.secret_key = secrets.token_hex(32)
    print("⚠️  WARNING: Using auto-generated SECRET_KEY. Set SESSION_SECRET or SECRET_KEY environment variable in production!")

app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL', 'sqlite:///tasklynk.db')
if app.config['SQLALCHEMY_DATABASE_URI'].startswith('postgres://'):
    app.config['SQLALCHEMY_DATABASE_URI'] = app.config['SQLALCHEMY_DATABASE_URI'].replace('postgres://', 'postgresql+psycopg2://', 1)
elif app.config['SQLALCHEMY_DATABASE_URI'].startswith('postgresql://'):
    app.config['SQLALCHEMY_DATABASE_URI'] = app.config['SQLALCHEMY_DATABASE_URI'].replace('postgresql://', 'postgresql+psycopg2://', 1)
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

# Secure session configuration
app.config['SESSION_COOKIE_SECURE'] = os.environ.get('FLASK_ENV') == 'production'
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(hours=24)

app.config['APP_URL'] = os.environ.get('APP_URL', 'http://localhost:5000')
app.config['CRON_SECRET'] = os.environ.get('CRON_SECRET')
app.config['PAYMENT_LOG_DIR'] = os.environ.get('PAYMENT_LOG_DIR')

db = SQLAlchemy(app)

# Secure CORS configuration - restrict to specific origins in production
allowed_origins = os.environ.get('ALLOWED_ORIGINS', '*').split(',')
CORS(app,
     origins=allowed_origins,
     supports_credentials=True,
     max_age=3600)

# Jobs due in less than this many hours are priced as urgent
URGENT_DEADLINE_HOURS = 8
URGENCY_MULTIPLIER = 1.3

MPESA_ACK = {'ResultCode': 0, 'ResultDesc': 'Success'}


# Login required decorator for API routes
def login_required(f):
    """Decorator to require user authentication for API routes"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            return jsonify({'error': 'Unauthorized - Please login'}), 401
        return f(*args, **kwargs)
    return decorated_function

# Admin authentication decorator
def admin_required(f):
    """Decorator to require admin authentication"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            return jsonify({'error': 'Unauthorized - Please login'}), 401

        user = db.session.get(User, session['user_id'])
        if not user or user.role != 'admin':
            return jsonify({'error': 'Forbidden - Admin access required'}), 403

        return f(*args, **kwargs)
    return decorated_function

def current_actor():
    """Actor for the logged-in user"""
    user = db.session.get(User, session['user_id']) if 'user_id' in session else None
    if not user:
        return Actor(user_id=session.get('user_id'), role='unknown')
    return Actor(user_id=user.id, role=user.role)

def parse_iso_datetime(value):
    """Parse an ISO timestamp into a naive UTC datetime, or None"""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = (parsed - parsed.utcoffset()).replace(tzinfo=None)
    return parsed

def parse_int(value):
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None

# Database Models
class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    display_id = db.Column(db.String(50), unique=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    name = db.Column(db.String(120), nullable=False)
    phone = db.Column(db.String(20))
    role = db.Column(db.String(20), default='client')  # admin, client, freelancer
    approved = db.Column(db.Boolean, default=False)
    balance = db.Column(db.Float, default=0.0)
    earned = db.Column(db.Float, default=0.0)
    total_earnings = db.Column(db.Float, default=0.0)
    completed_jobs = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'display_id': self.display_id,
            'email': self.email,
            'name': self.name,
            'phone': self.phone,
            'role': self.role,
            'approved': self.approved,
            'balance': self.balance,
            'earned': self.earned,
            'total_earnings': self.total_earnings,
            'completed_jobs': self.completed_jobs,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }

class Job(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    display_id = db.Column(db.String(50), unique=True)
    order_number = db.Column(db.String(100), unique=True)
    client_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    assigned_freelancer_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    title = db.Column(db.String(200), nullable=False)
    instructions = db.Column(db.Text)
    work_type = db.Column(db.String(50))
    amount = db.Column(db.Float, nullable=False)
    urgency_multiplier = db.Column(db.Float, default=1.0)
    calculated_price = db.Column(db.Float)
    deadline = db.Column(db.DateTime)
    actual_deadline = db.Column(db.DateTime)
    freelancer_deadline = db.Column(db.DateTime)
    admin_approved = db.Column(db.Boolean, default=False)
    client_approved = db.Column(db.Boolean, default=False)
    revision_requested = db.Column(db.Boolean, default=False)
    revision_notes = db.Column(db.Text)
    payment_confirmed = db.Column(db.Boolean, default=False)
    status = db.Column(db.String(30), default='pending')  # see order_workflow.VALID_STATUSES
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'display_id': self.display_id,
            'order_number': self.order_number,
            'client_id': self.client_id,
            'assigned_freelancer_id': self.assigned_freelancer_id,
            'title': self.title,
            'instructions': self.instructions,
            'work_type': self.work_type,
            'amount': self.amount,
            'urgency_multiplier': self.urgency_multiplier,
            'calculated_price': self.calculated_price,
            'deadline': self.deadline.isoformat() if self.deadline else None,
            'actual_deadline': self.actual_deadline.isoformat() if self.actual_deadline else None,
            'freelancer_deadline': self.freelancer_deadline.isoformat() if self.freelancer_deadline else None,
            'admin_approved': self.admin_approved,
            'client_approved': self.client_approved,
            'revision_requested': self.revision_requested,
            'revision_notes': self.revision_notes,
            'payment_confirmed': self.payment_confirmed,
            'status': self.status,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None
        }

class Bid(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey('job.id'), nullable=False)
    freelancer_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    bid_amount = db.Column(db.Float)
    message = db.Column(db.Text)
    status = db.Column(db.String(20), default='pending')  # pending, accepted, rejected
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'job_id': self.job_id,
            'freelancer_id': self.freelancer_id,
            'bid_amount': self.bid_amount,
            'message': self.message,
            'status': self.status,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }

class Payment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey('job.id'), nullable=False)
    client_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    freelancer_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    amount = db.Column(db.Float, nullable=False)
    payment_method = db.Column(db.String(20), default='mpesa')  # mpesa, paystack, manual
    status = db.Column(db.String(20), default='pending')  # pending, confirmed, completed, failed
    phone_number = db.Column(db.String(20))
    mpesa_checkout_request_id = db.Column(db.String(100), index=True)
    mpesa_merchant_request_id = db.Column(db.String(100))
    mpesa_receipt_number = db.Column(db.String(100))
    mpesa_transaction_date = db.Column(db.String(30))
    mpesa_result_desc = db.Column(db.Text)
    paystack_reference = db.Column(db.String(100), unique=True)
    confirmed_by_admin = db.Column(db.Boolean, default=False)
    confirmed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'job_id': self.job_id,
            'client_id': self.client_id,
            'freelancer_id': self.freelancer_id,
            'amount': self.amount,
            'payment_method': self.payment_method,
            'status': self.status,
            'phone_number': self.phone_number,
            'mpesa_checkout_request_id': self.mpesa_checkout_request_id,
            'mpesa_receipt_number': self.mpesa_receipt_number,
            'mpesa_result_desc': self.mpesa_result_desc,
            'paystack_reference': self.paystack_reference,
            'confirmed_by_admin': self.confirmed_by_admin,
            'confirmed_at': self.confirmed_at.isoformat() if self.confirmed_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }

class Invoice(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey('job.id'), nullable=False)
    client_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    freelancer_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    invoice_number = db.Column(db.String(50), unique=True, nullable=False)  # INV-YYYYMMDD-NNNNN
    amount = db.Column(db.Float, nullable=False)
    freelancer_amount = db.Column(db.Float, nullable=False)
    admin_commission = db.Column(db.Float, nullable=False)
    description = db.Column(db.Text)
    status = db.Column(db.String(20), default='pending')
    is_paid = db.Column(db.Boolean, default=False)
    paid_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'job_id': self.job_id,
            'client_id': self.client_id,
            'freelancer_id': self.freelancer_id,
            'invoice_number': self.invoice_number,
            'amount': self.amount,
            'freelancer_amount': self.freelancer_amount,
            'admin_commission': self.admin_commission,
            'description': self.description,
            'status': self.status,
            'is_paid': self.is_paid,
            'paid_at': self.paid_at.isoformat() if self.paid_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }

class Notification(db.Model):
    """Model for user notifications"""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    job_id = db.Column(db.Integer, db.ForeignKey('job.id'))
    type = db.Column(db.String(50), nullable=False)  # see notifications.NOTIFICATION_TYPES
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text)
    read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'job_id': self.job_id,
            'type': self.type,
            'title': self.title,
            'message': self.message,
            'read': self.read,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }

class JobAttachment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey('job.id'), nullable=False)
    uploaded_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    file_name = db.Column(db.String(255), nullable=False)
    file_url = db.Column(db.String(500), nullable=False)
    scheduled_deletion_at = db.Column(db.DateTime)
    deleted_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


# Services
notifier = Notifier(db, Notification, User)
workflow = OrderWorkflow(db, Job, User, JobAttachment, notifier, email_service)
bid_resolver = BidResolver(db, Job, Bid, User, workflow, notifier, email_service)
ledger = BalanceLedger(db, User, Job)
payment_service = PaymentConfirmationService(
    db, Payment, Job, User, Invoice, workflow, ledger, notifier, email_service, payment_logger
)
mpesa_client = get_mpesa_client()
paystack_client = get_paystack_client()

init_payment_logger(app)


@app.errorhandler(MarketplaceError)
def handle_marketplace_error(e):
    if e.status_code >= 500:
        app.logger.error(f"{e.error_code}: {e.message}")
    return jsonify(e.to_dict()), e.status_code


# Jobs

def generate_job_display_id(now):
    """Order#<YYYY><9-digit sequence>, counting jobs created this year"""
    year_start = datetime(now.year, 1, 1)
    count = Job.query.filter(
        Job.created_at >= year_start,
        Job.created_at < datetime(now.year + 1, 1, 1)
    ).count()
    return f"Order#{now.year}{count + 1:09d}"

def generate_order_number(client):
    """Client's capitalized first name, suffixed -2, -3... until unused"""
    names = (client.name or '').split()
    first_name = names[0] if names else 'Client'
    base = first_name[:1].upper() + first_name[1:].lower()
    order_number = base
    suffix = 1
    while Job.query.filter_by(order_number=order_number).first() is not None:
        suffix += 1
        order_number = f"{base}-{suffix}"
    return order_number

@app.route('/api/jobs', methods=['POST'])
@login_required
def create_job():
    """Client posts a new order"""
    try:
        data = request.get_json(silent=True) or {}
        actor = current_actor()

        client_id = parse_int(data.get('clientId')) if actor.is_admin and data.get('clientId') else actor.user_id
        title = (data.get('title') or '').strip() if isinstance(data.get('title'), str) else ''
        instructions = (data.get('instructions') or '').strip() if isinstance(data.get('instructions'), str) else ''
        work_type = data.get('workType')

        if not title:
            raise ValidationError('title is required and must be a non-empty string', 'INVALID_TITLE')
        if not instructions:
            raise ValidationError('instructions is required and must be a non-empty string', 'INVALID_INSTRUCTIONS')
        if not work_type or not isinstance(work_type, str):
            raise ValidationError('workType is required', 'INVALID_WORK_TYPE')

        try:
            amount = float(data.get('amount'))
        except (TypeError, ValueError):
            raise ValidationError('amount must be a positive number', 'INVALID_AMOUNT')
        if amount <= 0:
            raise ValidationError('amount must be a positive number', 'INVALID_AMOUNT')

        deadline = parse_iso_datetime(data.get('deadline'))
        if not deadline:
            raise ValidationError('deadline must be a valid ISO timestamp', 'INVALID_DEADLINE')

        client = db.session.get(User, client_id) if client_id else None
        if not client:
            raise NotFoundError('Client not found', 'CLIENT_NOT_FOUND')

        now = datetime.utcnow()
        hours_until_deadline = (deadline - now).total_seconds() / 3600
        urgency_multiplier = URGENCY_MULTIPLIER if hours_until_deadline < URGENT_DEADLINE_HOURS else 1.0

        job = Job(
            display_id=generate_job_display_id(now),
            order_number=generate_order_number(client),
            client_id=client.id,
            title=title,
            instructions=instructions,
            work_type=work_type,
            amount=amount,
            urgency_multiplier=urgency_multiplier,
            calculated_price=round_money(amount * urgency_multiplier),
            deadline=deadline,
            actual_deadline=parse_iso_datetime(data.get('actualDeadline')) or deadline,
            freelancer_deadline=parse_iso_datetime(data.get('freelancerDeadline')) or deadline,
            status='pending',
            created_at=now,
            updated_at=now
        )
        db.session.add(job)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise ConflictError('Generated order number already exists. Please retry.', 'ORDER_NUMBER_CONFLICT')

        app.logger.info(f"Job {job.display_id} ({job.order_number}) created by user {actor.user_id}")
        notifier.notify_many(
            notifier.admin_ids(),
            'order_updated',
            'New Order Posted',
            f'New order "{job.title}" ({job.display_id}) is awaiting approval',
            job_id=job.id
        )
        return jsonify(job.to_dict()), 201
    except MarketplaceError:
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Create job error: {str(e)}")
        return jsonify({'error': 'Failed to create job'}), 500

@app.route('/api/jobs/<int:job_id>/status', methods=['PATCH'])
@login_required
def update_job_status(job_id):
    """Change a job's status"""
    try:
        data = request.get_json(silent=True) or {}
        job = workflow.set_status(
            job_id,
            data.get('status'),
            revision_requested=data.get('revisionRequested'),
            revision_notes=data['revisionNotes'] if 'revisionNotes' in data else UNSET,
            client_approved=data.get('clientApproved'),
            actor=current_actor()
        )
        return jsonify(job.to_dict())
    except MarketplaceError:
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Update job status error: {str(e)}")
        return jsonify({'error': 'Failed to update job status'}), 500

@app.route('/api/jobs/<int:job_id>/approve', methods=['PATCH'])
@admin_required
def approve_job(job_id):
    """Admin approves or rejects a posted job"""
    try:
        data = request.get_json(silent=True) or {}
        job = workflow.approve(job_id, data.get('approved'), actor=current_actor())
        return jsonify(job.to_dict())
    except MarketplaceError:
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Approve job error: {str(e)}")
        return jsonify({'error': 'Failed to approve job'}), 500

@app.route('/api/jobs/<int:job_id>/assign', methods=['PATCH'])
@admin_required
def assign_job(job_id):
    """Admin assigns a freelancer, resolving the job's bids"""
    try:
        data = request.get_json(silent=True) or {}
        job = bid_resolver.assign(job_id, data.get('freelancerId'), actor=current_actor())
        return jsonify(job.to_dict())
    except MarketplaceError:
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Assign job error: {str(e)}")
        return jsonify({'error': 'Failed to assign job'}), 500


# Bids

@app.route('/api/bids', methods=['POST'])
@login_required
def place_bid():
    """Freelancer bids on an open job"""
    try:
        data = request.get_json(silent=True) or {}
        actor = current_actor()
        if actor.role != 'freelancer':
            return jsonify({'error': 'Only freelancers can place bids'}), 403

        job_id = parse_int(data.get('jobId'))
        if job_id is None:
            raise ValidationError('Valid job ID is required', 'INVALID_JOB_ID')
        job = workflow.get_job(job_id)
        if job.status in TERMINAL_STATUSES or job.assigned_freelancer_id:
            raise ConflictError('Job is no longer open for bids', 'JOB_NOT_OPEN')

        bid_amount = data.get('bidAmount')
        if bid_amount is not None:
            try:
                bid_amount = float(bid_amount)
            except (TypeError, ValueError):
                raise ValidationError('bidAmount must be a number', 'INVALID_BID_AMOUNT')
            if bid_amount <= 0:
                raise ValidationError('bidAmount must be a positive number', 'INVALID_BID_AMOUNT')

        if Bid.query.filter_by(job_id=job.id, freelancer_id=actor.user_id).first():
            raise ConflictError('You have already bid on this job', 'DUPLICATE_BID')

        bid = Bid(
            job_id=job.id,
            freelancer_id=actor.user_id,
            bid_amount=bid_amount,
            message=data.get('message'),
            status='pending'
        )
        db.session.add(bid)
        db.session.commit()
        return jsonify(bid.to_dict()), 201
    except MarketplaceError:
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Place bid error: {str(e)}")
        return jsonify({'error': 'Failed to place bid'}), 500


# Payments

@app.route('/api/payments/<int:payment_id>/confirm', methods=['PATCH'])
@admin_required
def confirm_payment(payment_id):
    """Admin confirms or rejects a payment by hand"""
    try:
        data = request.get_json(silent=True) or {}
        confirmed = data.get('confirmed')
        if not isinstance(confirmed, bool):
            raise ValidationError('confirmed must be a boolean', 'INVALID_CONFIRMED_FIELD')

        if confirmed:
            outcome = PaymentOutcome.success(receipt_number=data.get('receiptNumber'))
        else:
            outcome = PaymentOutcome.failure(data.get('reason') or 'Rejected by admin')

        result = payment_service.confirm(payment_id, outcome, 'manual', actor=current_actor())
        payment = payment_service.get_payment(payment_id)
        return jsonify({**result, 'payment': payment.to_dict()})
    except MarketplaceError:
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Confirm payment error: {str(e)}")
        return jsonify({'error': f"Internal server error: {str(e)}"}), 500

@app.route('/api/mpesa/initiate', methods=['POST'])
@login_required
def mpesa_initiate():
    """Create a pending payment and send the STK push"""
    try:
        data = request.get_json(silent=True) or {}
        actor = current_actor()

        job_id = parse_int(data.get('jobId'))
        if job_id is None:
            raise ValidationError('Valid job ID is required', 'INVALID_JOB_ID')
        if not data.get('phone'):
            raise ValidationError('Phone number is required', 'MISSING_PHONE')
        phone = format_phone(data.get('phone'))
        try:
            amount = float(data.get('amount'))
        except (TypeError, ValueError):
            raise ValidationError('amount must be a positive number', 'INVALID_AMOUNT')
        if amount <= 0:
            raise ValidationError('amount must be a positive number', 'INVALID_AMOUNT')

        job = workflow.get_job(job_id)
        if job.payment_confirmed:
            raise ConflictError('Order has already been paid', 'ALREADY_PAID')
        client_id = parse_int(data.get('clientId')) or job.client_id

        payment = Payment(
            job_id=job.id,
            client_id=client_id,
            freelancer_id=job.assigned_freelancer_id,
            amount=amount,
            payment_method='mpesa',
            status='pending',
            phone_number=phone
        )
        db.session.add(payment)
        db.session.commit()

        try:
            push = mpesa_client.initiate_push(
                phone,
                amount,
                job.display_id or f"TL-{job.id}",
                f"Payment for {job.title}"
            )
        except MarketplaceError as e:
            payment.status = 'failed'
            payment.mpesa_result_desc = e.message
            payment.updated_at = datetime.utcnow()
            db.session.commit()
            raise

        payment.mpesa_checkout_request_id = push['CheckoutRequestID']
        payment.mpesa_merchant_request_id = push['MerchantRequestID']
        payment.phone_number = push['phone_number']
        payment.updated_at = datetime.utcnow()
        db.session.commit()

        app.logger.info(f"STK push {payment.mpesa_checkout_request_id} sent for payment {payment.id} by user {actor.user_id}")
        return jsonify({
            'success': True,
            'paymentId': payment.id,
            'checkoutRequestId': payment.mpesa_checkout_request_id,
            'merchantRequestId': payment.mpesa_merchant_request_id,
            'customerMessage': push.get('CustomerMessage')
        })
    except MarketplaceError:
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"M-Pesa initiate error: {str(e)}")
        return jsonify({'error': 'Failed to initiate M-Pesa payment'}), 500

@app.route('/api/mpesa/callback', methods=['POST'])
def mpesa_callback():
    """Safaricom STK push result. Always acknowledged with 200."""
    try:
        body = request.get_json(silent=True) or {}
        checkout_request_id, outcome = parse_callback(body)
        payment_logger.log_webhook('mpesa', checkout_request_id, details=outcome.to_dict() if outcome else None)

        if checkout_request_id is None:
            app.logger.warning("M-Pesa callback without stkCallback body")
            return jsonify(MPESA_ACK), 200

        payment = payment_service.find_by_checkout_request(checkout_request_id)
        if not payment:
            app.logger.warning(f"M-Pesa callback for unknown CheckoutRequestID {checkout_request_id}")
            return jsonify(MPESA_ACK), 200

        payment_service.confirm(payment.id, outcome, 'webhook', actor=SYSTEM)
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"M-Pesa callback error: {str(e)}")

    return jsonify(MPESA_ACK), 200

@app.route('/api/mpesa/query', methods=['POST'])
@login_required
def mpesa_query():
    """Poll Safaricom for an STK push result and apply it once resolved"""
    try:
        data = request.get_json(silent=True) or {}
        checkout_request_id = data.get('checkoutRequestId')
        if not checkout_request_id:
            raise ValidationError('checkoutRequestId is required', 'MISSING_CHECKOUT_REQUEST_ID')

        payment = payment_service.find_by_checkout_request(checkout_request_id)
        if not payment:
            raise NotFoundError('Payment not found', 'PAYMENT_NOT_FOUND')

        if payment.status != 'pending':
            return jsonify({'status': payment.status, 'applied': False, 'payment': payment.to_dict()})

        outcome = mpesa_client.query_status(checkout_request_id)
        if outcome is None:
            return jsonify({'status': 'pending', 'applied': False, 'payment': payment.to_dict()})

        result = payment_service.confirm(payment.id, outcome, 'poll', actor=current_actor())
        payment = payment_service.get_payment(payment.id)
        return jsonify({**result, 'payment': payment.to_dict()})
    except MarketplaceError:
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"M-Pesa query error: {str(e)}")
        return jsonify({'error': 'Failed to query M-Pesa payment'}), 500

@app.route('/api/paystack/verify', methods=['POST'])
@login_required
def paystack_verify():
    """Verify a Paystack card payment and apply it"""
    try:
        data = request.get_json(silent=True) or {}
        reference = data.get('reference')
        job_id = parse_int(data.get('jobId'))
        if not reference or job_id is None or data.get('totalAmount') is None:
            raise ValidationError('Missing required fields: reference, jobId, totalAmount', 'MISSING_FIELDS')
        try:
            total_amount = float(data.get('totalAmount'))
        except (TypeError, ValueError):
            raise ValidationError('totalAmount must be a number', 'INVALID_AMOUNT')

        job = workflow.get_job(job_id)

        payment = Payment.query.filter_by(paystack_reference=reference).first()
        if payment is None:
            payment = Payment(
                job_id=job.id,
                client_id=parse_int(data.get('clientId')) or job.client_id,
                freelancer_id=job.assigned_freelancer_id,
                amount=total_amount,
                payment_method='paystack',
                status='pending',
                phone_number=data.get('phoneNumber'),
                paystack_reference=reference
            )
            try:
                db.session.add(payment)
                db.session.commit()
            except IntegrityError:
                # Concurrent verification of the same reference created it first
                db.session.rollback()
                payment = Payment.query.filter_by(paystack_reference=reference).first()

        if payment.status != 'pending':
            return jsonify({'status': payment.status, 'applied': False, 'payment': payment.to_dict()})

        outcome = paystack_client.verify(reference)
        if outcome.succeeded and outcome.amount is not None and abs(outcome.amount - total_amount) > 1:
            app.logger.error(f"Paystack amount mismatch for {reference}: expected {total_amount}, received {outcome.amount}")
            outcome = PaymentOutcome.failure(
                f"Payment amount mismatch. Expected: {total_amount}, Received: {outcome.amount}",
                raw=outcome.raw
            )

        result = payment_service.confirm(payment.id, outcome, 'poll', actor=current_actor())
        payment = payment_service.get_payment(payment.id)
        return jsonify({**result, 'payment': payment.to_dict()})
    except MarketplaceError:
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Paystack verify error: {str(e)}")
        return jsonify({'error': 'Failed to verify Paystack payment'}), 500


# Invoices

@app.route('/api/invoices/<int:invoice_id>/mark-paid', methods=['POST'])
@admin_required
def mark_invoice_paid(invoice_id):
    """Admin marks an invoice as paid"""
    try:
        invoice = payment_service.mark_invoice_paid(invoice_id)
        return jsonify({'success': True, 'invoice': invoice.to_dict()})
    except MarketplaceError:
        raise
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Mark invoice paid error: {str(e)}")
        return jsonify({'error': 'Failed to mark invoice as paid'}), 500


# Balances

def cron_authorized():
    """CRON_SECRET bearer token, ?secret= parameter or an admin session"""
    cron_secret = app.config.get('CRON_SECRET')
    if cron_secret:
        auth_header = request.headers.get('Authorization', '')
        if auth_header == f"Bearer {cron_secret}" or request.args.get('secret') == cron_secret:
            return True
    if 'user_id' in session:
        user = db.session.get(User, session['user_id'])
        return bool(user and user.role == 'admin')
    return False

@app.route('/api/cron/recalculate-freelancer-balances', methods=['GET', 'POST'])
def recalculate_freelancer_balances():
    """Recompute every freelancer balance from completed, paid jobs"""
    if not cron_authorized():
        return jsonify({'error': 'Unauthorized'}), 401
    try:
        result = ledger.reconcile_all()
    except Exception as e:
        app.logger.error(f"Balance recalculation error: {str(e)}")
        return jsonify({'error': 'Failed to recalculate balances'}), 500

    payment_logger.log_reconciliation(result['updated'], result['drifted'])
    return jsonify({
        'success': True,
        'message': f"Recalculated balances for {result['updated']} freelancers",
        **result
    })

@app.route('/api/freelancer/completed-orders-balance')
@login_required
def completed_orders_balance():
    """Balance summary over a freelancer's completed, paid orders"""
    user_id = request.args.get('userId')
    if not user_id:
        raise ValidationError('userId is required', 'MISSING_USER_ID')
    freelancer_id = parse_int(user_id)
    if freelancer_id is None:
        raise ValidationError('userId must be a valid integer', 'INVALID_USER_ID')

    actor = current_actor()
    if not actor.is_admin and actor.user_id != freelancer_id:
        return jsonify({'error': 'Forbidden'}), 403

    return jsonify(ledger.completed_orders_summary(freelancer_id))


# Notifications

@app.route('/api/notifications')
@login_required
def get_notifications():
    """Get user notifications"""
    user_id = session['user_id']
    unread_only = request.args.get('unread_only', 'false').lower() == 'true'
    limit = min(parse_int(request.args.get('limit')) or 20, 100)

    query = Notification.query.filter_by(user_id=user_id)
    if unread_only:
        query = query.filter_by(read=False)

    notifications = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()
    unread_count = Notification.query.filter_by(user_id=user_id, read=False).count()

    return jsonify({
        'notifications': [n.to_dict() for n in notifications],
        'unread_count': unread_count
    })

@app.route('/api/notifications/mark-read', methods=['POST'])
@login_required
def mark_notifications_read():
    """Mark notifications as read"""
    user_id = session['user_id']
    data = request.get_json(silent=True) or {}
    notification_ids = data.get('ids', [])

    if notification_ids:
        Notification.query.filter(Notification.id.in_(notification_ids), Notification.user_id == user_id).update({'read': True}, synchronize_session=False)
    else:
        Notification.query.filter_by(user_id=user_id, read=False).update({'read': True}, synchronize_session=False)

    db.session.commit()
    return jsonify({'success': True})


# Lazy initialization flag
_db_initialized = False

def init_database():
    """Create tables (lazy loading)"""
    global _db_initialized
    if _db_initialized:
        return

    try:
        db.create_all()
        _db_initialized = True
    except Exception as e:
        app.logger.error(f"Database initialization error: {str(e)}")
        db.session.rollback()

with app.app_context():
    init_database()

if os.environ.get('ENABLE_SCHEDULER', 'false').lower() == 'true':
    from scheduled_jobs import init_scheduler
    init_scheduler(app, db, JobAttachment, ledger, payment_logger)

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=os.environ.get('FLASK_DEBUG', 'False') == 'True')
