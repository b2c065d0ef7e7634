"""
Pytest configuration and fixtures for Kleanr backend tests
"""
import os
from datetime import date

import pytest

import notifications
from server import create_app
from auth_routes import generate_token
from models import (
    db, User, UserBill, UserHome, UserAppointment, BusinessEmployee, EmployeeJobAssignment,
)

TEST_PASSWORD = 'TestPass123!'


@pytest.fixture
def app():
    """Fresh application and in-memory database for each test"""
    os.environ['FLASK_ENV'] = 'testing'
    app = create_app('testing')

    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    """Create test client"""
    return app.test_client()


@pytest.fixture(autouse=True)
def outbox(monkeypatch):
    """Capture outgoing email and push instead of calling the providers."""
    sent = {'emails': [], 'pushes': []}

    def fake_send_email(to_email, subject, html_content):
        sent['emails'].append({'to': to_email, 'subject': subject, 'html': html_content})

    def fake_send_push(user_id, title, body, data=None, category=None):
        sent['pushes'].append({'user_id': user_id, 'title': title, 'body': body, 'data': data})
        return 1

    monkeypatch.setattr(notifications, 'send_email', fake_send_email)
    monkeypatch.setattr(notifications, 'send_push_notification', fake_send_push)
    return sent


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

@pytest.fixture
def make_user(app):
    """Factory for users of any type"""
    counter = {'n': 0}

    def _make_user(type=None, email=None, username=None, first_name='Test', last_name='User',
                   password=TEST_PASSWORD, **kwargs):
        counter['n'] += 1
        user = User(
            type=type,
            email=email if email is not None else 'user{}@example.com'.format(counter['n']),
            username=username,
            first_name=first_name,
            last_name=last_name,
            **kwargs
        )
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user

    return _make_user


@pytest.fixture
def cleaner(make_user):
    return make_user(type='cleaner', email='cleaner@example.com', username='cleanclara',
                     first_name='Clara', last_name='Cleaner')


@pytest.fixture
def homeowner(make_user):
    user = make_user(type='homeowner', email='homeowner@example.com', username='homeownerhank',
                     first_name='Hank', last_name='Holmes')
    db.session.add(UserBill(user_id=user.id, appointment_due=0.0, cancellation_due=0.0, total_due=0.0))
    db.session.commit()
    return user


@pytest.fixture
def home(homeowner):
    home = UserHome(
        user_id=homeowner.id,
        nickname='Beach House',
        address='1 Ocean Dr',
        city='Miami Beach',
        state='FL',
        zipcode='33139',
        latitude=25.7700,
        longitude=-80.1300,
    )
    db.session.add(home)
    db.session.commit()
    return home


def auth_header(user):
    return {'Authorization': 'Bearer {}'.format(generate_token(user.id))}


@pytest.fixture
def headers_for(app):
    """Build a bearer header for any user"""
    return auth_header


@pytest.fixture
def cleaner_headers(cleaner):
    return auth_header(cleaner)


@pytest.fixture
def homeowner_headers(homeowner):
    return auth_header(homeowner)


# ---------------------------------------------------------------------------
# Business jobs
# ---------------------------------------------------------------------------

@pytest.fixture
def business_owner(make_user):
    return make_user(type='cleaner', email='owner@example.com', first_name='Olivia', last_name='Owner')


@pytest.fixture
def employee_user(make_user):
    return make_user(type='employee', email='eve@example.com', first_name='Eve', last_name='Employee')


@pytest.fixture
def employee(employee_user, business_owner):
    employee = BusinessEmployee(
        user_id=employee_user.id,
        business_owner_id=business_owner.id,
        first_name='Eve',
        last_name='Employee',
        status='active',
    )
    db.session.add(employee)
    db.session.commit()
    return employee


@pytest.fixture
def appointment(homeowner, home, business_owner):
    appointment = UserAppointment(
        user_id=homeowner.id,
        home_id=home.id,
        cleaner_id=business_owner.id,
        date=date.today(),
        time_constraint='10am-3pm',
        price=150.0,
    )
    db.session.add(appointment)
    db.session.commit()
    return appointment


@pytest.fixture
def assignment(appointment, employee, business_owner):
    assignment = EmployeeJobAssignment(
        appointment_id=appointment.id,
        business_employee_id=employee.id,
        business_owner_id=business_owner.id,
        status='assigned',
    )
    db.session.add(assignment)
    db.session.commit()
    return assignment
