from flask import Flask, request, redirect, url_for, render_template, flash, abort, jsonify
import os
import re
import uuid
import base64
import secrets
from io import BytesIO
from itertools import groupby
from urllib.parse import urlparse
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from datetime import date, datetime
import click
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from werkzeug.security import generate_password_hash, check_password_hash
from flask_wtf import FlaskForm
from flask_wtf.csrf import CSRFProtect
from wtforms import StringField, PasswordField, SubmitField, TextAreaField, DateField, SelectField, SelectMultipleField
from wtforms.validators import InputRequired, DataRequired, Length, ValidationError, Regexp, Optional, URL
from flask_login import LoginManager, UserMixin, login_user, logout_user, login_required, current_user

# --- Initialize app ---
app = Flask(__name__)

# Security settings
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'dev-secret')  # change in production
app.config['WTF_CSRF_ENABLED'] = os.environ.get('WTF_CSRF_ENABLED', '1').lower() not in ('0', 'false', 'no')
app.config['WTF_CSRF_TIME_LIMIT'] = 3600  # 1 hour CSRF token validity

# Money settings
app.config['DEFAULT_CURRENCY'] = os.environ.get('DEFAULT_CURRENCY', 'USD').upper()
app.config['SUPPORTED_CURRENCIES'] = [
    c.strip().upper()
    for c in os.environ.get('SUPPORTED_CURRENCIES', 'USD,EUR,GBP,INR,AUD,CAD').split(',')
    if c.strip()
]
if app.config['DEFAULT_CURRENCY'] not in app.config['SUPPORTED_CURRENCIES']:
    app.config['SUPPORTED_CURRENCIES'].insert(0, app.config['DEFAULT_CURRENCY'])

app.logger.setLevel(os.environ.get('LOG_LEVEL', 'INFO').upper())

CENTS = Decimal('0.01')
ROLE_OWNER = 'owner'
ROLE_MEMBER = 'member'

# --- Database config and init ---
app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL', 'sqlite:///travelmate.db')
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
db = SQLAlchemy(app)
migrate = Migrate(app, db)
csrf = CSRFProtect(app)

# --- Login manager ---
login_manager = LoginManager(app)
login_manager.login_view = 'auth'
login_manager.login_message_category = 'info'


def new_id():
    return str(uuid.uuid4())


# --- User model ---
class User(UserMixin, db.Model):
    """The authentication identity. Everything user-facing lives on Profile."""
    __tablename__ = 'users'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    profile = db.relationship('Profile', back_populates='user', uselist=False, cascade='all, delete-orphan')

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    @property
    def display_name(self):
        if self.profile and self.profile.full_name:
            return self.profile.full_name
        if self.profile and self.profile.username:
            return self.profile.username
        return self.email


@login_manager.user_loader
def load_user(user_id):
    return db.session.get(User, user_id)


# --- Profile model ---
class Profile(db.Model):
    """
    User-facing profile, one per user.
    Usernames are unique regardless of case.
    """
    __tablename__ = 'profiles'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), unique=True, nullable=False)
    username = db.Column(db.String(30), unique=True, nullable=True)
    full_name = db.Column(db.String(100), nullable=True)
    avatar_url = db.Column(db.String(500), nullable=True)
    email = db.Column(db.String(120), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = db.relationship('User', back_populates='profile')


# --- Trip model ---
class Trip(db.Model):
    """
    Root aggregate for a trip.
    Members, itinerary items and expenses are removed together with the trip.
    """
    __tablename__ = 'trips'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    title = db.Column(db.String(120), nullable=False)
    destination = db.Column(db.String(120), nullable=True)
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    description = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    share_token = db.Column(db.String(64), unique=True, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    creator = db.relationship('User')
    members = db.relationship('TripMember', back_populates='trip',
                              cascade='all, delete-orphan',
                              order_by='TripMember.joined_at')
    itinerary_items = db.relationship('ItineraryItem', back_populates='trip',
                                      cascade='all, delete-orphan',
                                      order_by='[ItineraryItem.activity_date, ItineraryItem.start_time]')
    expenses = db.relationship('Expense', back_populates='trip',
                               cascade='all, delete-orphan',
                               order_by='Expense.expense_date.desc()')

    def generate_share_token(self):
        """Generate a secure random token for invite links."""
        self.share_token = secrets.token_urlsafe(32)
        return self.share_token

    def get_share_url(self):
        """Get the full invite URL for this trip."""
        if not self.share_token:
            self.generate_share_token()
            db.session.commit()
        return url_for('join_trip', trip_id=self.id, token=self.share_token, _external=True)

    def is_owner(self, user_id):
        return self.created_by == user_id


class TripMember(db.Model):
    __tablename__ = 'trip_members'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    trip_id = db.Column(db.String(36), db.ForeignKey('trips.id'), nullable=False)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    role = db.Column(db.String(20), nullable=False, default=ROLE_MEMBER)
    joined_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    trip = db.relationship('Trip', back_populates='members')
    user = db.relationship('User')

    __table_args__ = (
        db.UniqueConstraint('trip_id', 'user_id', name='unique_trip_member'),
    )


# --- Itinerary model ---
class ItineraryItem(db.Model):
    """
    A scheduled activity within a trip.
    """
    __tablename__ = 'itinerary_items'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    trip_id = db.Column(db.String(36), db.ForeignKey('trips.id'), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    activity_date = db.Column(db.Date, nullable=False)
    start_time = db.Column(db.Time, nullable=True)
    end_time = db.Column(db.Time, nullable=True)
    location = db.Column(db.String(200), nullable=True)
    estimated_cost = db.Column(db.Numeric(10, 2), nullable=True)
    created_by = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    trip = db.relationship('Trip', back_populates='itinerary_items')
    creator = db.relationship('User')
    # Deleting an item unlinks its expenses instead of deleting them
    expenses = db.relationship('Expense', back_populates='itinerary_item')


# --- Expense models ---
class Expense(db.Model):
    """
    A cost paid by one member on behalf of some trip participants.
    The participants' share_amount values sum to amount.
    """
    __tablename__ = 'expenses'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    trip_id = db.Column(db.String(36), db.ForeignKey('trips.id'), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=True, default=lambda: app.config['DEFAULT_CURRENCY'])
    paid_by = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    expense_date = db.Column(db.Date, nullable=False, default=date.today)
    itinerary_item_id = db.Column(db.String(36), db.ForeignKey('itinerary_items.id'), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    trip = db.relationship('Trip', back_populates='expenses')
    payer = db.relationship('User', foreign_keys=[paid_by])
    itinerary_item = db.relationship('ItineraryItem', back_populates='expenses')
    participants = db.relationship('ExpenseParticipant', back_populates='expense',
                                   cascade='all, delete-orphan')


class ExpenseParticipant(db.Model):
    __tablename__ = 'expense_participants'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    expense_id = db.Column(db.String(36), db.ForeignKey('expenses.id'), nullable=False)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    share_amount = db.Column(db.Numeric(12, 2), nullable=True)

    expense = db.relationship('Expense', back_populates='participants')
    user = db.relationship('User')

    __table_args__ = (
        db.UniqueConstraint('expense_id', 'user_id', name='unique_expense_participant'),
    )


# --- Money helpers ---
def to_money(value):
    """Convert a number or numeric string to a Decimal rounded to cents."""
    if isinstance(value, float):
        value = str(value)
    try:
        return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError):
        raise ValueError(f'Not a valid amount: {value!r}')


def parse_time(value):
    """Parse an HH:MM string, returning None for blank input."""
    value = (value or '').strip()
    if not value:
        return None
    return datetime.strptime(value, '%H:%M').time()


# --- Forms ---
USERNAME_PATTERN = r'^[A-Za-z0-9_.-]{3,30}$'


def username_taken(username, exclude_user_id=None):
    query = Profile.query.filter(db.func.lower(Profile.username) == username.strip().lower())
    if exclude_user_id:
        query = query.filter(Profile.user_id != exclude_user_id)
    return query.first() is not None


class SignInForm(FlaskForm):
    email = StringField('Email', validators=[InputRequired()])
    password = PasswordField('Password', validators=[InputRequired()])
    submit = SubmitField('Sign In')


class SignUpForm(FlaskForm):
    full_name = StringField('Full Name', validators=[DataRequired(), Length(1, 100)])
    username = StringField('Username', validators=[
        DataRequired(),
        Regexp(USERNAME_PATTERN, message='Username must be 3-30 letters, numbers, dots, dashes or underscores.')
    ])

    def validate_email_format(form, field):
        v = (field.data or '').strip().lower()
        pattern = re.compile(r'^[a-z0-9][a-z0-9._+-]*@[a-z0-9.-]+\.[a-z]{2,}$')
        if not pattern.fullmatch(v):
            raise ValidationError('Enter a valid email address.')

    email = StringField('Email', validators=[DataRequired(), validate_email_format])
    password = PasswordField('Password', validators=[DataRequired(), Length(8, 128)])
    submit = SubmitField('Create Account')

    def validate_username(self, field):
        if username_taken(field.data or ''):
            raise ValidationError('Username taken. Please choose a different username.')

    def validate_email(self, field):
        v = (field.data or '').strip().lower()
        if User.query.filter_by(email=v).first():
            raise ValidationError('Email already registered.')

    def validate_password(self, field):
        pwd = field.data or ''
        if not re.search(r'[A-Za-z]', pwd):
            raise ValidationError('Password must include at least one letter.')
        if not re.search(r'[0-9]', pwd):
            raise ValidationError('Password must include at least one number.')


class ProfileForm(FlaskForm):
    full_name = StringField('Full Name', validators=[Optional(), Length(max=100)])
    username = StringField('Username', validators=[
        DataRequired(),
        Regexp(USERNAME_PATTERN, message='Username must be 3-30 letters, numbers, dots, dashes or underscores.')
    ])
    avatar_url = StringField('Avatar URL', validators=[Optional(), URL(), Length(max=500)])
    submit = SubmitField('Save')

    def validate_username(self, field):
        if username_taken(field.data or '', exclude_user_id=getattr(self, 'user_id', None)):
            raise ValidationError('Username taken. Please choose a different username.')


class TripForm(FlaskForm):
    title = StringField('Trip title', validators=[DataRequired(message='Please enter a trip title.'), Length(max=120)])
    destination = StringField('Destination', validators=[Optional(), Length(max=120)])
    start_date = DateField('Start date', validators=[Optional()], format='%Y-%m-%d')
    end_date = DateField('End date', validators=[Optional()], format='%Y-%m-%d')
    description = TextAreaField('Description', validators=[Optional(), Length(max=2000)])
    submit = SubmitField('Save Trip')

    def stranded_titles(form, outside):
        """Titles of the edited trip's itinerary items for which outside(date) holds."""
        trip = getattr(form, 'trip', None)
        if trip is None:
            return ''
        return ', '.join(f'"{i.title}"' for i in trip.itinerary_items if outside(i.activity_date))

    def validate_start_date(form, field):
        if field.data is None:
            return
        titles = form.stranded_titles(lambda d: d < field.data)
        if titles:
            raise ValidationError(f'These itinerary items are before the new start date: {titles}')

    def validate_end_date(form, field):
        if field.data is None:
            return
        # end date must be same or after start date
        if form.start_date.data is not None and field.data < form.start_date.data:
            raise ValidationError('End date must be the same or after the start date.')
        titles = form.stranded_titles(lambda d: d > field.data)
        if titles:
            raise ValidationError(f'These itinerary items are after the new end date: {titles}')


class InviteForm(FlaskForm):
    identifier = StringField('Username or email', validators=[DataRequired(), Length(max=120)])
    submit = SubmitField('Invite')


class ItineraryForm(FlaskForm):
    title = StringField('Title', validators=[DataRequired(), Length(min=1, max=200)])
    description = TextAreaField('Description', validators=[Optional(), Length(max=2000)])
    activity_date = DateField('Date', validators=[InputRequired()], format='%Y-%m-%d')
    start_time = StringField('Start time', validators=[Optional()], render_kw={"type": "time"})
    end_time = StringField('End time', validators=[Optional()], render_kw={"type": "time"})
    location = StringField('Location', validators=[Optional(), Length(max=200)])
    estimated_cost = StringField('Estimated cost', validators=[Optional()])
    submit = SubmitField('Save')

    def validate_activity_date(self, field):
        """Validate that the itinerary date falls within the trip's date range."""
        trip = getattr(self, 'trip', None)
        if trip is None or field.data is None:
            return
        if trip.start_date and field.data < trip.start_date:
            raise ValidationError('The itinerary date cannot be before the trip\'s start date')
        if trip.end_date and field.data > trip.end_date:
            raise ValidationError('The itinerary date cannot be after the trip\'s end date')

    def validate_start_time(self, field):
        try:
            parse_time(field.data)
        except ValueError:
            raise ValidationError('Invalid time format. Please use HH:MM format.')

    def validate_end_time(self, field):
        try:
            end = parse_time(field.data)
        except ValueError:
            raise ValidationError('Invalid time format. Please use HH:MM format.')
        if end is None:
            return
        try:
            start = parse_time(self.start_time.data)
        except ValueError:
            return
        if start is None:
            raise ValidationError('Set a start time before setting an end time.')
        if end < start:
            raise ValidationError('End time cannot be before the start time.')

    def validate_estimated_cost(form, field):
        if not field.data:
            return
        try:
            cost = to_money(field.data)
        except ValueError:
            raise ValidationError('Cost must be a number, e.g. 12.50')
        if cost < 0:
            raise ValidationError('Cost cannot be negative.')


class ExpenseForm(FlaskForm):
    title = StringField('Title', validators=[DataRequired(), Length(min=1, max=200)])
    description = TextAreaField('Description', validators=[Optional(), Length(max=2000)])
    amount = StringField('Amount', validators=[InputRequired()])
    currency = SelectField('Currency', validators=[InputRequired()])
    paid_by = SelectField('Paid by', validators=[InputRequired()])
    expense_date = DateField('Date', validators=[Optional()], format='%Y-%m-%d')
    itinerary_item_id = SelectField('Itinerary item', validators=[Optional()])
    participants = SelectMultipleField('Split between')
    split = SelectField('Split', choices=[('equal', 'Split equally'), ('custom', 'Custom amounts')], default='equal')
    submit = SubmitField('Save')

    def validate_amount(form, field):
        try:
            val = to_money(field.data)
        except ValueError:
            raise ValidationError('Enter a numeric amount, e.g. 23.50')
        if val <= 0:
            raise ValidationError('Amount must be greater than 0.')

    def validate_participants(form, field):
        if not field.data:
            raise ValidationError('Choose at least one participant.')


# --- Membership helpers ---
def is_trip_member(trip_id, user_id):
    return TripMember.query.filter_by(trip_id=trip_id, user_id=user_id).first() is not None


def count_member_expenses(trip_id, user_id):
    """Count the trip's expenses the user paid for or shares in."""
    shared = db.select(ExpenseParticipant.expense_id).where(ExpenseParticipant.user_id == user_id)
    return Expense.query.filter(
        Expense.trip_id == trip_id,
        db.or_(Expense.paid_by == user_id, Expense.id.in_(shared)),
    ).count()


def get_member_trip(trip_id):
    """Load a trip the current user belongs to, or abort."""
    trip = Trip.query.get_or_404(trip_id)
    if not is_trip_member(trip.id, current_user.id):
        app.logger.warning(f'User {current_user.id} denied access to trip {trip.id}')
        abort(403)
    return trip


def get_owned_trip(trip_id):
    trip = Trip.query.get_or_404(trip_id)
    if not trip.is_owner(current_user.id):
        app.logger.warning(f'User {current_user.id} is not the owner of trip {trip.id}')
        abort(403)
    return trip


def add_member(trip, user, role=ROLE_MEMBER):
    member = TripMember(trip_id=trip.id, user_id=user.id, role=role)
    db.session.add(member)
    return member


def find_user(identifier):
    """Find a user by username or email, case-insensitively."""
    v = (identifier or '').strip().lower()
    if not v:
        return None
    if '@' in v:
        return User.query.filter_by(email=v).first()
    profile = Profile.query.filter(db.func.lower(Profile.username) == v).first()
    return profile.user if profile else None


def member_choices(trip):
    return [(m.user_id, m.user.display_name) for m in trip.members]


def flash_form_errors(form):
    for field, errors in form.errors.items():
        label = getattr(form, field).label.text if hasattr(form, field) else field
        for error in errors:
            flash(f'{label}: {error}', 'danger')


def make_qr_code(data):
    """Render data as a PNG QR code, base64-encoded for embedding in HTML."""
    import qrcode

    qr = qrcode.QRCode(version=1, box_size=10, border=5)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer, format='PNG')
    return base64.b64encode(buffer.getvalue()).decode()


def is_safe_next(target):
    if not target:
        return False
    parsed = urlparse(target)
    return not parsed.scheme and not parsed.netloc and target.startswith('/') and not target.startswith('//')


# --- Itinerary conflicts ---
def items_conflict(a, b):
    """
    Two items on the same day conflict when their time ranges overlap.
    An item without end_time occupies only its start instant.
    Items without a start_time never conflict.
    """
    if a.activity_date != b.activity_date:
        return False
    if a.start_time is None or b.start_time is None:
        return False
    a_end = a.end_time or a.start_time
    b_end = b.end_time or b.start_time
    if a.start_time == b.start_time:
        return True
    return a.start_time < b_end and b.start_time < a_end


def find_conflicts(items):
    """Return every conflicting (earlier, later) pair of items."""
    timed = sorted((i for i in items if i.start_time is not None),
                   key=lambda i: (i.activity_date, i.start_time))
    conflicts = []
    for day, day_items in groupby(timed, key=lambda i: i.activity_date):
        day_items = list(day_items)
        for idx, first in enumerate(day_items):
            for second in day_items[idx + 1:]:
                if items_conflict(first, second):
                    conflicts.append((first, second))
    return conflicts


# --- Expense splitting and settlement ---
def split_equally(amount, user_ids):
    """
    Split amount into cent-exact shares, one per user.
    The rounding remainder goes to the last user.
    """
    if not user_ids:
        raise ValueError('Cannot split an expense between nobody')
    amount = to_money(amount)
    per_person = (amount / len(user_ids)).quantize(CENTS, rounding=ROUND_HALF_UP)
    shares = [(user_id, per_person) for user_id in user_ids[:-1]]
    assigned = per_person * (len(user_ids) - 1)
    shares.append((user_ids[-1], amount - assigned))
    return shares


def parse_custom_shares(formdata, user_ids, amount):
    """Read one share-<user_id> field per participant and check they add up."""
    amount = to_money(amount)
    shares = []
    for user_id in user_ids:
        raw = (formdata.get(f'share-{user_id}') or '').strip()
        if not raw:
            raise ValueError('Enter a share for every participant.')
        share = to_money(raw)
        if share < 0:
            raise ValueError('Shares cannot be negative.')
        shares.append((user_id, share))
    total = sum((s for _, s in shares), Decimal('0.00'))
    if total != amount:
        raise ValueError(f'Shares add up to {total} but the expense is {amount}.')
    return shares


def apply_shares(expense, shares):
    """Sync the expense's participant rows with the given (user_id, share) pairs."""
    existing = {p.user_id: p for p in expense.participants}
    for user_id, share in shares:
        participant = existing.pop(user_id, None)
        if participant is None:
            expense.participants.append(ExpenseParticipant(user_id=user_id, share_amount=share))
        else:
            participant.share_amount = share
    for leftover in existing.values():
        expense.participants.remove(leftover)


def expense_shares(expense):
    """
    Resolve each participant's share of an expense.
    Participants without a stored share split what the others leave over.
    """
    amount = to_money(expense.amount)
    known = [(p.user_id, to_money(p.share_amount)) for p in expense.participants if p.share_amount is not None]
    unknown = [p.user_id for p in expense.participants if p.share_amount is None]
    if not unknown:
        return known
    remainder = amount - sum((s for _, s in known), Decimal('0.00'))
    return known + split_equally(remainder, unknown)


def is_equal_split(expense):
    """Whether the stored shares match an equal split, whoever holds the remainder."""
    if not expense.participants:
        return True
    user_ids = [p.user_id for p in expense.participants]
    equal = sorted(share for _, share in split_equally(expense.amount, user_ids))
    return sorted(share for _, share in expense_shares(expense)) == equal


def compute_balances(expenses):
    """
    Calculate how much each user owes or is owed, per currency.
    Returns a dictionary: currency -> {user_id -> Decimal balance}
    Positive balance: User is owed money.
    Negative balance: User owes money.
    """
    balances = {}
    for expense in expenses:
        currency = expense.currency or app.config['DEFAULT_CURRENCY']
        bucket = balances.setdefault(currency, {})
        bucket.setdefault(expense.paid_by, Decimal('0.00'))
        if not expense.participants:
            # Nobody shares it: the payer bears the whole cost
            continue

        bucket[expense.paid_by] += to_money(expense.amount)
        for user_id, share in expense_shares(expense):
            bucket[user_id] = bucket.get(user_id, Decimal('0.00')) - share
    return balances


def compute_settlements(balances):
    """
    Convert net balances of a single currency into 'who pays whom' transfers.
    This uses a greedy algorithm: the largest debt is settled against the
    largest credit first.
    """
    creditors = []  # People who are owed money (positive balance)
    debtors = []    # People who owe money (negative balance)

    for user_id, balance in balances.items():
        amount = to_money(balance)
        if amount > 0:
            creditors.append([user_id, amount])
        elif amount < 0:
            debtors.append([user_id, -amount])

    creditors.sort(key=lambda x: (-x[1], x[0]))
    debtors.sort(key=lambda x: (-x[1], x[0]))

    settlements = []
    debtor_idx = 0
    creditor_idx = 0

    while debtor_idx < len(debtors) and creditor_idx < len(creditors):
        debtor_id, amount_owed = debtors[debtor_idx]
        creditor_id, amount_due = creditors[creditor_idx]

        transfer_amount = min(amount_owed, amount_due)
        settlements.append({
            'from': debtor_id,
            'to': creditor_id,
            'amount': transfer_amount
        })

        debtors[debtor_idx][1] -= transfer_amount
        creditors[creditor_idx][1] -= transfer_amount

        if debtors[debtor_idx][1] == 0:
            debtor_idx += 1
        if creditors[creditor_idx][1] == 0:
            creditor_idx += 1

    return settlements


def trip_ledger(trip):
    """Balances and settlements of a trip, per currency, with display names."""
    balances = compute_balances(trip.expenses)
    user_ids = {uid for bucket in balances.values() for uid in bucket}
    user_ids.update(m.user_id for m in trip.members)
    users = User.query.filter(User.id.in_(list(user_ids))).all() if user_ids else []
    names = {u.id: u.display_name for u in users}

    ledger = []
    for currency in sorted(balances):
        bucket = balances[currency]
        ledger.append({
            'currency': currency,
            'balances': [
                {'user_id': uid, 'name': names.get(uid, uid), 'balance': bucket[uid]}
                for uid in sorted(bucket, key=lambda u: names.get(u, u))
            ],
            'settlements': [
                dict(s, from_name=names.get(s['from'], s['from']), to_name=names.get(s['to'], s['to']))
                for s in compute_settlements(bucket)
            ],
        })
    return ledger


# --- Routes ---
@app.route('/')
def home():
    if current_user.is_authenticated:
        return redirect(url_for('dashboard'))
    return render_template('home.html')


@app.route('/auth', methods=['GET', 'POST'])
def auth():
    if current_user.is_authenticated:
        return redirect(url_for('dashboard'))

    signin_form = SignInForm(prefix='signin')
    signup_form = SignUpForm(prefix='signup')
    next_page = request.args.get('next')
    active_tab = 'signin'

    if request.method == 'POST' and signin_form.submit.data:
        if signin_form.validate():
            email_lookup = (signin_form.email.data or '').strip().lower()
            user = User.query.filter_by(email=email_lookup).first()
            if user and user.check_password(signin_form.password.data):
                login_user(user)
                app.logger.info(f'User {user.id} signed in')
                if is_safe_next(next_page):
                    return redirect(next_page)
                return redirect(url_for('dashboard'))
            flash('Invalid email or password.', 'danger')
        else:
            flash('Please fill in all fields', 'danger')

    elif request.method == 'POST' and signup_form.submit.data:
        active_tab = 'signup'
        if signup_form.validate():
            try:
                email = signup_form.email.data.strip().lower()
                user = User(email=email)
                user.set_password(signup_form.password.data)
                user.profile = Profile(
                    username=signup_form.username.data.strip(),
                    full_name=signup_form.full_name.data.strip(),
                    email=email,
                )
                db.session.add(user)
                db.session.commit()
            except Exception:
                db.session.rollback()
                app.logger.exception('Error signing up')
                flash('Sign up failed. Username might be taken. Try another.', 'danger')
                return render_template('auth.html', signin_form=signin_form,
                                       signup_form=signup_form, active_tab=active_tab)
            login_user(user)
            app.logger.info(f'User {user.id} signed up')
            flash('Welcome to TravelMate!', 'success')
            return redirect(url_for('dashboard'))
        flash_form_errors(signup_form)

    return render_template('auth.html', signin_form=signin_form,
                           signup_form=signup_form, active_tab=active_tab)


@app.route('/auth/signout', methods=['POST'])
@login_required
def signout():
    logout_user()
    flash('Signed out', 'info')
    return redirect(url_for('home'))


@app.route('/profile', methods=['GET', 'POST'])
@login_required
def profile():
    profile = current_user.profile
    if profile is None:
        profile = Profile(user_id=current_user.id, email=current_user.email)
        db.session.add(profile)

    form = ProfileForm(obj=profile)
    form.user_id = current_user.id
    if form.validate_on_submit():
        profile.full_name = (form.full_name.data or '').strip() or None
        profile.username = form.username.data.strip()
        profile.avatar_url = (form.avatar_url.data or '').strip() or None
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            app.logger.exception('Error updating profile')
            flash('An error occurred while saving your profile.', 'danger')
            return render_template('profile.html', form=form)
        flash('Profile updated', 'success')
        return redirect(url_for('profile'))
    flash_form_errors(form)
    return render_template('profile.html', form=form)


# --- Dashboard & Trip CRUD ---
@app.route('/dashboard')
@login_required
def dashboard():
    trips = (Trip.query
             .join(TripMember, TripMember.trip_id == Trip.id)
             .filter(TripMember.user_id == current_user.id)
             .order_by(Trip.created_at.desc())
             .all())
    return render_template('dashboard.html', trips=trips)


@app.route('/trips/new', methods=['GET', 'POST'])
@login_required
def create_trip():
    form = TripForm()
    if form.validate_on_submit():
        try:
            trip = Trip(
                title=form.title.data.strip(),
                destination=(form.destination.data or '').strip() or None,
                start_date=form.start_date.data,
                end_date=form.end_date.data,
                description=(form.description.data or '').strip() or None,
                created_by=current_user.id,
            )
            trip.generate_share_token()
            db.session.add(trip)
            # Flush so trip.id is populated before creating the owner membership
            db.session.flush()
            add_member(trip, current_user, role=ROLE_OWNER)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            app.logger.exception('Error creating trip')
            flash(f'Create failed: {type(e).__name__}', 'danger')
            return render_template('trip_form.html', form=form, trip=None)

        app.logger.info(f'Trip {trip.id} created by {current_user.id}')
        flash('Trip created. Your trip was created successfully.', 'success')
        return redirect(url_for('dashboard'))

    flash_form_errors(form)
    return render_template('trip_form.html', form=form, trip=None)


@app.route('/trips/<trip_id>')
@login_required
def view_trip(trip_id):
    trip = get_member_trip(trip_id)

    days = [(day, list(items)) for day, items in groupby(trip.itinerary_items, key=lambda i: i.activity_date)]
    conflicts = find_conflicts(trip.itinerary_items)
    conflict_ids = {item.id for pair in conflicts for item in pair}

    totals = {}
    for e in trip.expenses:
        currency = e.currency or app.config['DEFAULT_CURRENCY']
        totals[currency] = totals.get(currency, Decimal('0.00')) + to_money(e.amount)

    is_owner = trip.is_owner(current_user.id)
    share_url = qr_code = None
    if is_owner:
        share_url = trip.get_share_url()
        qr_code = make_qr_code(share_url)

    return render_template('trip_detail.html',
                           trip=trip,
                           days=days,
                           conflicts=conflicts,
                           conflict_ids=conflict_ids,
                           totals=totals,
                           is_owner=is_owner,
                           share_url=share_url,
                           qr_code=qr_code,
                           invite_form=InviteForm())


@app.route('/trips/<trip_id>/edit', methods=['GET', 'POST'])
@login_required
def edit_trip(trip_id):
    trip = get_owned_trip(trip_id)
    form = TripForm(obj=trip)
    form.trip = trip  # existing items must stay inside the new dates
    if form.validate_on_submit():
        try:
            trip.title = form.title.data.strip()
            trip.destination = (form.destination.data or '').strip() or None
            trip.start_date = form.start_date.data
            trip.end_date = form.end_date.data
            trip.description = (form.description.data or '').strip() or None
            db.session.commit()
            flash('Trip updated successfully', 'success')
            return redirect(url_for('view_trip', trip_id=trip.id))
        except Exception:
            db.session.rollback()
            app.logger.exception('Error updating trip')
            flash('An error occurred while updating the trip', 'danger')
    flash_form_errors(form)
    return render_template('trip_form.html', form=form, trip=trip)


@app.route('/trips/<trip_id>/delete', methods=['POST'])
@login_required
def delete_trip(trip_id):
    trip = get_owned_trip(trip_id)
    try:
        db.session.delete(trip)
        db.session.commit()
        app.logger.info(f'Trip {trip_id} deleted by {current_user.id}')
        flash('Trip and all related items deleted successfully', 'info')
    except Exception as e:
        db.session.rollback()
        app.logger.exception('Error deleting trip')
        flash(f'An error occurred while deleting the trip: {type(e).__name__}', 'danger')
        return redirect(url_for('view_trip', trip_id=trip_id))
    return redirect(url_for('dashboard'))


# --- Members & invites ---
@app.route('/trips/<trip_id>/members', methods=['POST'])
@login_required
def invite_member(trip_id):
    trip = get_owned_trip(trip_id)
    form = InviteForm()
    if not form.validate_on_submit():
        flash_form_errors(form)
        return redirect(url_for('view_trip', trip_id=trip.id))

    user = find_user(form.identifier.data)
    if user is None:
        flash(f'No user found for "{form.identifier.data.strip()}".', 'warning')
        return redirect(url_for('view_trip', trip_id=trip.id))
    if is_trip_member(trip.id, user.id):
        flash(f'{user.display_name} is already a member of this trip.', 'info')
        return redirect(url_for('view_trip', trip_id=trip.id))

    try:
        add_member(trip, user)
        db.session.commit()
    except Exception:
        db.session.rollback()
        app.logger.exception('Error inviting member')
        flash('An error occurred while inviting the member.', 'danger')
        return redirect(url_for('view_trip', trip_id=trip.id))

    app.logger.info(f'User {user.id} added to trip {trip.id}')
    flash(f'{user.display_name} was added to the trip.', 'success')
    return redirect(url_for('view_trip', trip_id=trip.id))


@app.route('/trips/<trip_id>/members/<user_id>/remove', methods=['POST'])
@login_required
def remove_member(trip_id, user_id):
    """Allow the trip owner to remove a member."""
    trip = get_owned_trip(trip_id)
    if user_id == current_user.id:
        flash('You cannot remove yourself. Delete the trip instead.', 'warning')
        return redirect(url_for('view_trip', trip_id=trip.id))

    member = TripMember.query.filter_by(trip_id=trip.id, user_id=user_id).first_or_404()
    user_name = member.user.display_name
    # payers and participants must stay members
    open_expenses = count_member_expenses(trip.id, user_id)
    if open_expenses:
        flash(f'{user_name} is still on {open_expenses} expense(s) of this trip. '
              'Edit or delete those expenses first.', 'warning')
        return redirect(url_for('view_trip', trip_id=trip.id))
    try:
        db.session.delete(member)
        db.session.commit()
    except Exception:
        db.session.rollback()
        app.logger.exception('Error removing member')
        flash('An error occurred while removing the member.', 'danger')
        return redirect(url_for('view_trip', trip_id=trip.id))

    flash(f'Member "{user_name}" removed successfully.', 'success')
    return redirect(url_for('view_trip', trip_id=trip.id))


@app.route('/trips/<trip_id>/leave', methods=['POST'])
@login_required
def leave_trip(trip_id):
    trip = Trip.query.get_or_404(trip_id)
    member = TripMember.query.filter_by(trip_id=trip.id, user_id=current_user.id).first()
    if not member:
        flash('Not a member', 'warning')
        return redirect(url_for('dashboard'))
    if trip.is_owner(current_user.id):
        flash('The trip owner cannot leave. Delete the trip instead.', 'warning')
        return redirect(url_for('view_trip', trip_id=trip.id))
    open_expenses = count_member_expenses(trip.id, current_user.id)
    if open_expenses:
        flash(f'You are still on {open_expenses} expense(s) of this trip. '
              'Ask the payer or the owner to remove you first.', 'warning')
        return redirect(url_for('view_trip', trip_id=trip.id))
    db.session.delete(member)
    db.session.commit()
    flash(f'You left "{trip.title}".', 'info')
    return redirect(url_for('dashboard'))


@app.route('/trips/<trip_id>/join/<token>')
@login_required
def join_trip(trip_id, token):
    """Join a trip through its invite link."""
    trip = Trip.query.get_or_404(trip_id)

    if not trip.share_token or not secrets.compare_digest(trip.share_token, token):
        app.logger.warning(f'Invalid invite token attempt: trip_id={trip_id}, token={token[:10]}...')
        flash('Invalid invite link. The link may have been reset.', 'danger')
        return redirect(url_for('dashboard'))

    if is_trip_member(trip.id, current_user.id):
        flash(f'You are already a member of "{trip.title}".', 'info')
        return redirect(url_for('view_trip', trip_id=trip.id))

    try:
        add_member(trip, current_user)
        db.session.commit()
    except Exception:
        db.session.rollback()
        app.logger.exception('Error joining trip')
        flash('An error occurred while joining the trip.', 'danger')
        return redirect(url_for('dashboard'))

    app.logger.info(f'User {current_user.id} joined trip {trip.id} via invite link')
    flash(f'You joined "{trip.title}"!', 'success')
    return redirect(url_for('view_trip', trip_id=trip.id))


@app.route('/trips/<trip_id>/reset_link', methods=['POST'])
@login_required
def reset_trip_link(trip_id):
    """Regenerate the trip invite token."""
    trip = get_owned_trip(trip_id)
    trip.generate_share_token()
    db.session.commit()
    flash('Invitation link has been reset. Old links will no longer work.', 'success')
    return redirect(url_for('view_trip', trip_id=trip.id))


# --- Itinerary ---
def save_itinerary_item(item, form):
    item.title = form.title.data.strip()
    item.description = (form.description.data or '').strip() or None
    item.activity_date = form.activity_date.data
    item.start_time = parse_time(form.start_time.data)
    item.end_time = parse_time(form.end_time.data)
    item.location = (form.location.data or '').strip() or None
    item.estimated_cost = to_money(form.estimated_cost.data) if form.estimated_cost.data else None


def warn_conflicts(item):
    clashes = [other for other in item.trip.itinerary_items
               if other.id != item.id and items_conflict(item, other)]
    if clashes:
        titles = ', '.join(f'"{other.title}"' for other in clashes)
        flash(f'Heads up: "{item.title}" overlaps with {titles}.', 'warning')


@app.route('/trips/<trip_id>/itinerary/new', methods=['GET', 'POST'])
@login_required
def create_itinerary(trip_id):
    trip = get_member_trip(trip_id)
    form = ItineraryForm()
    form.trip = trip  # Pass trip to form for date validation
    if form.validate_on_submit():
        item = ItineraryItem(trip_id=trip.id, created_by=current_user.id)
        save_itinerary_item(item, form)
        try:
            db.session.add(item)
            db.session.commit()
        except Exception:
            db.session.rollback()
            app.logger.exception('Error creating itinerary item')
            flash('An error occurred while saving the itinerary item.', 'danger')
            return render_template('itinerary_form.html', form=form, trip=trip, item=None)
        flash('Itinerary item added', 'success')
        warn_conflicts(item)
        return redirect(url_for('view_trip', trip_id=trip.id))
    flash_form_errors(form)
    return render_template('itinerary_form.html', form=form, trip=trip, item=None)


def get_editable_item(item_id):
    """Load an item the current user may change: its creator or the trip owner, while still a member."""
    item = ItineraryItem.query.get_or_404(item_id)
    trip = get_member_trip(item.trip_id)
    if item.created_by != current_user.id and not trip.is_owner(current_user.id):
        abort(403)
    return item


@app.route('/itinerary/<item_id>/edit', methods=['GET', 'POST'])
@login_required
def edit_itinerary(item_id):
    item = get_editable_item(item_id)
    trip = item.trip
    form = ItineraryForm(obj=item)
    form.trip = trip
    if request.method == 'GET':
        form.start_time.data = item.start_time.strftime('%H:%M') if item.start_time else ''
        form.end_time.data = item.end_time.strftime('%H:%M') if item.end_time else ''
        form.estimated_cost.data = str(item.estimated_cost) if item.estimated_cost is not None else ''
    if form.validate_on_submit():
        save_itinerary_item(item, form)
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            app.logger.exception('Error updating itinerary item')
            flash('An error occurred while saving the itinerary item.', 'danger')
            return render_template('itinerary_form.html', form=form, trip=trip, item=item)
        flash('Itinerary updated', 'success')
        warn_conflicts(item)
        return redirect(url_for('view_trip', trip_id=trip.id))
    flash_form_errors(form)
    return render_template('itinerary_form.html', form=form, trip=trip, item=item)


@app.route('/itinerary/<item_id>/delete', methods=['POST'])
@login_required
def delete_itinerary(item_id):
    item = get_editable_item(item_id)
    trip_id = item.trip_id
    db.session.delete(item)
    db.session.commit()
    flash('Itinerary item deleted', 'info')
    return redirect(url_for('view_trip', trip_id=trip_id))


# --- Expenses ---
def prepare_expense_form(form, trip):
    """Populate member, currency and itinerary choices from the trip."""
    choices = member_choices(trip)
    form.paid_by.choices = choices
    form.participants.choices = choices
    form.currency.choices = [(c, c) for c in app.config['SUPPORTED_CURRENCIES']]
    form.itinerary_item_id.choices = [('', 'None')] + [
        (i.id, f'{i.activity_date.isoformat()} {i.title}') for i in trip.itinerary_items
    ]


def save_expense(expense, form):
    """Copy form data onto the expense. Raises ValueError for bad shares."""
    amount = to_money(form.amount.data)
    participant_ids = list(form.participants.data)
    if form.split.data == 'custom':
        shares = parse_custom_shares(request.form, participant_ids, amount)
    else:
        shares = split_equally(amount, participant_ids)

    expense.title = form.title.data.strip()
    expense.description = (form.description.data or '').strip() or None
    expense.amount = amount
    expense.currency = form.currency.data
    expense.paid_by = form.paid_by.data
    expense.expense_date = form.expense_date.data or date.today()
    expense.itinerary_item_id = form.itinerary_item_id.data or None
    apply_shares(expense, shares)


@app.route('/trips/<trip_id>/expenses')
@login_required
def trip_expenses(trip_id):
    trip = get_member_trip(trip_id)
    return render_template('trip_expenses.html', trip=trip, expenses=trip.expenses, ledger=trip_ledger(trip))


@app.route('/trips/<trip_id>/balances.json')
@login_required
def trip_balances(trip_id):
    trip = get_member_trip(trip_id)
    payload = []
    for entry in trip_ledger(trip):
        payload.append({
            'currency': entry['currency'],
            'balances': [dict(b, balance=str(b['balance'])) for b in entry['balances']],
            'settlements': [dict(s, amount=str(s['amount'])) for s in entry['settlements']],
        })
    return jsonify({'trip_id': trip.id, 'ledger': payload})


@app.route('/trips/<trip_id>/expenses/new', methods=['GET', 'POST'])
@login_required
def create_expense(trip_id):
    trip = get_member_trip(trip_id)
    form = ExpenseForm()
    prepare_expense_form(form, trip)
    if request.method == 'GET':
        form.currency.data = app.config['DEFAULT_CURRENCY']
        form.paid_by.data = current_user.id
        form.participants.data = [m.user_id for m in trip.members]
        form.expense_date.data = date.today()

    if form.validate_on_submit():
        expense = Expense(trip_id=trip.id)
        try:
            save_expense(expense, form)
        except ValueError as e:
            flash(str(e), 'danger')
            return render_template('expense_form.html', trip=trip, form=form, expense=None)
        try:
            db.session.add(expense)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            app.logger.exception('Error creating expense')
            flash(f'An error occurred while creating the expense: {type(e).__name__}', 'danger')
            return render_template('expense_form.html', trip=trip, form=form, expense=None)

        app.logger.info(f'Expense {expense.id} added to trip {trip.id}')
        flash(f'Expense "{expense.title}" added: {expense.amount} {expense.currency}', 'success')
        return redirect(url_for('trip_expenses', trip_id=trip.id))

    flash_form_errors(form)
    return render_template('expense_form.html', trip=trip, form=form, expense=None)


def get_editable_expense(expense_id):
    expense = Expense.query.get_or_404(expense_id)
    trip = get_member_trip(expense.trip_id)
    if expense.paid_by != current_user.id and not trip.is_owner(current_user.id):
        abort(403)
    return expense


@app.route('/expenses/<expense_id>/edit', methods=['GET', 'POST'])
@login_required
def edit_expense(expense_id):
    expense = get_editable_expense(expense_id)
    trip = expense.trip
    form = ExpenseForm()
    prepare_expense_form(form, trip)
    if request.method == 'GET':
        form.title.data = expense.title
        form.description.data = expense.description
        form.amount.data = str(expense.amount)
        form.currency.data = expense.currency
        form.paid_by.data = expense.paid_by
        form.expense_date.data = expense.expense_date
        form.itinerary_item_id.data = expense.itinerary_item_id or ''
        form.participants.data = [p.user_id for p in expense.participants]
        form.split.data = 'equal' if is_equal_split(expense) else 'custom'

    if form.validate_on_submit():
        try:
            save_expense(expense, form)
        except ValueError as e:
            flash(str(e), 'danger')
            return render_template('expense_form.html', trip=trip, form=form, expense=expense)
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            app.logger.exception('Error updating expense')
            flash('An error occurred while updating the expense.', 'danger')
            return render_template('expense_form.html', trip=trip, form=form, expense=expense)
        flash(f'Expense updated: {expense.amount} {expense.currency}', 'success')
        return redirect(url_for('trip_expenses', trip_id=trip.id))

    flash_form_errors(form)
    return render_template('expense_form.html', trip=trip, form=form, expense=expense)


@app.route('/expenses/<expense_id>/delete', methods=['POST'])
@login_required
def delete_expense(expense_id):
    expense = get_editable_expense(expense_id)
    trip_id = expense.trip_id
    db.session.delete(expense)
    db.session.commit()
    flash('Expense deleted', 'info')
    return redirect(url_for('trip_expenses', trip_id=trip_id))


@app.cli.command('init-db')
def init_db_command():
    """Create all tables."""
    db.create_all()
    click.echo('Initialized the TravelMate database.')


# --- Run server ---
if __name__ == '__main__':
    import socket

    def find_free_port(start_port=5000, max_attempts=10):
        """Find a free port starting from start_port."""
        for port in range(start_port, start_port + max_attempts):
            try:
                with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                    s.bind(('127.0.0.1', port))
                    return port
            except OSError:
                continue
        return None

    port = int(os.environ.get('FLASK_RUN_PORT', 5000))
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(('127.0.0.1', port))
    except OSError:
        print(f"Port {port} is already in use. Searching for an available port...")
        free_port = find_free_port(port)
        if free_port:
            port = free_port
            print(f"Using port {port} instead.")
        else:
            print(f"Could not find an available port. Please stop the process using port {port} or set FLASK_RUN_PORT.")
            exit(1)

    with app.app_context():
        db.create_all()
    app.run(debug=True, port=port, host='127.0.0.1')
