"""
Invitation service tests for Kleanr
Tests tokens, the status machine, acceptance and relationship teardown
"""
import json
from datetime import date, timedelta
from types import SimpleNamespace

import pytest

from models import (
    db, User, UserBill, UserHome, CleanerClient, RecurringSchedule, UserAppointment,
    UserCleanerAppointment, EmployeeJobAssignment, GuestNotLeftReport, Payout, InvitationStatus,
)
from services import invitation_service
from services.errors import (
    AccountExists, AlreadyAccepted, AlreadyLinked, Declined, DuplicateInvitation,
    InvalidToken, InvalidTransition, NotFound, ServiceError, TokenGenerationError,
)


def fake_hash(password):
    return 'hashed:' + password


@pytest.fixture
def invitation(cleaner):
    return invitation_service.create_invitation(
        cleaner_id=cleaner.id,
        name='Jane Client',
        email='  Jane@Example.COM ',
        phone='555-0100',
        address={'address': '12 Elm St', 'city': 'Springfield', 'state': 'IL', 'zipcode': '62701'},
        beds=3,
        baths=2,
        frequency='weekly',
        price=120.0,
        day_of_week=2,
        time_window='9am-1pm',
        notes='Dog in the backyard',
    )


class TestInviteTokens:
    """Test invitation token generation and lookup"""

    def test_token_is_32_hex_characters(self, app):
        token = invitation_service.generate_invite_token()
        assert len(token) == 32
        int(token, 16)

    def test_token_generation_gives_up_after_max_attempts(self, app, monkeypatch):
        attempts = []

        def always_taken(token):
            attempts.append(token)
            return True

        monkeypatch.setattr(invitation_service, '_token_exists', always_taken)
        with pytest.raises(TokenGenerationError):
            invitation_service.generate_invite_token()
        assert len(attempts) == invitation_service.MAX_TOKEN_ATTEMPTS

    def test_wrong_length_token_skips_lookup(self, app, monkeypatch):
        def fail_lookup(token):
            raise AssertionError('lookup should not happen')

        monkeypatch.setattr(invitation_service, '_find_by_token', fail_lookup)
        assert invitation_service.validate_invite_token('abc123') is None
        assert invitation_service.validate_invite_token('a' * 33) is None
        assert invitation_service.validate_invite_token('') is None

    def test_unknown_token(self, app):
        assert invitation_service.validate_invite_token('0' * 32) is None

    def test_pending_invitation_has_no_flags(self, invitation):
        result = invitation_service.validate_invite_token(invitation.invite_token)
        assert result.invitation.id == invitation.id
        assert not result.is_cancelled
        assert not result.is_already_accepted
        assert not result.is_expired

    @pytest.mark.parametrize('status, flag', [
        ('cancelled', 'is_cancelled'),
        ('active', 'is_already_accepted'),
        ('inactive', 'is_already_accepted'),
        ('declined', 'is_expired'),
    ])
    def test_status_flags(self, invitation, status, flag):
        invitation.status = status
        db.session.commit()

        result = invitation_service.validate_invite_token(invitation.invite_token)
        assert getattr(result, flag) is True


class TestStatusMachine:
    """Test allowed and rejected status changes"""

    @pytest.mark.parametrize('current, target', [
        ('pending_invite', 'active'),
        ('pending_invite', 'declined'),
        ('pending_invite', 'cancelled'),
        ('active', 'inactive'),
    ])
    def test_allowed_transitions(self, current, target):
        assert invitation_service.check_transition(current, target) == InvitationStatus(target)

    @pytest.mark.parametrize('current, target', [
        ('active', 'pending_invite'),
        ('active', 'declined'),
        ('declined', 'active'),
        ('cancelled', 'pending_invite'),
        ('inactive', 'active'),
    ])
    def test_rejected_transitions(self, current, target):
        with pytest.raises(InvalidTransition):
            invitation_service.check_transition(current, target)


class TestCreateInvitation:
    """Test creating invitations"""

    def test_creates_pending_invitation(self, invitation, cleaner):
        assert invitation.status == 'pending_invite'
        assert invitation.invited_email == 'jane@example.com'
        assert invitation.invited_name == 'Jane Client'
        assert invitation.cleaner_id == cleaner.id
        assert invitation.invited_at is not None
        assert invitation.auto_pay_enabled is True
        assert invitation.auto_schedule_enabled is True
        assert invitation.default_price == 120.0
        assert json.loads(invitation.invited_address)['city'] == 'Springfield'

    def test_duplicate_pending_invitation(self, invitation, cleaner):
        with pytest.raises(DuplicateInvitation) as exc:
            invitation_service.create_invitation(cleaner.id, 'Jane Again', 'jane@example.com')
        assert exc.value.message == 'An invitation has already been sent to this email'
        assert exc.value.status_code == 409

    def test_already_linked_client(self, invitation, cleaner):
        invitation.status = 'active'
        db.session.commit()
        with pytest.raises(AlreadyLinked):
            invitation_service.create_invitation(cleaner.id, 'Jane', 'JANE@example.com')

    def test_declined_email_can_be_invited_again(self, invitation, cleaner):
        invitation.status = 'declined'
        db.session.commit()
        again = invitation_service.create_invitation(cleaner.id, 'Jane', 'jane@example.com')
        assert again.id != invitation.id
        assert again.invite_token != invitation.invite_token

    def test_other_cleaner_can_invite_same_email(self, invitation, make_user):
        other = make_user(type='cleaner')
        cc = invitation_service.create_invitation(other.id, 'Jane', 'jane@example.com')
        assert cc.status == 'pending_invite'


class TestAcceptInvitation:
    """Test redeeming an invitation"""

    def test_accept_creates_linked_homeowner(self, invitation, cleaner):
        result = invitation_service.accept_invitation(invitation.invite_token, 'secret-pass', fake_hash)
        user, home, cc = result['user'], result['home'], result['cleaner_client']

        assert user.type == 'homeowner'
        assert user.email == 'jane@example.com'
        assert user.first_name == 'Jane'
        assert user.last_name == 'Client'
        assert user.password_hash == 'hashed:secret-pass'
        assert user.phone == '555-0100'

        bill = UserBill.query.filter_by(user_id=user.id).one()
        assert bill.total_due == 0.0

        assert home.address == '12 Elm St'
        assert home.is_setup_complete is False
        assert home.num_beds == 3
        assert home.preferred_cleaner_id == cleaner.id
        assert home.special_notes == 'Dog in the backyard'

        assert cc.status == 'active'
        assert cc.client_id == user.id
        assert cc.home_id == home.id
        assert cc.accepted_at is not None

    def test_single_word_name_repeats_as_last_name(self, cleaner):
        cc = invitation_service.create_invitation(cleaner.id, 'Cher', 'cher@example.com')
        user = invitation_service.accept_invitation(cc.invite_token, 'secret-pass', fake_hash)['user']
        assert (user.first_name, user.last_name) == ('Cher', 'Cher')

    def test_address_corrections_take_precedence(self, invitation):
        result = invitation_service.accept_invitation(
            invitation.invite_token, 'secret-pass', fake_hash,
            address_corrections={'address': '14 Elm St', 'zipcode': None},
        )
        assert result['home'].address == '14 Elm St'
        assert result['home'].zipcode == '62701'

    def test_no_address_means_no_home(self, cleaner):
        cc = invitation_service.create_invitation(cleaner.id, 'No Home', 'nohome@example.com')
        result = invitation_service.accept_invitation(cc.invite_token, 'secret-pass', fake_hash)
        assert result['home'] is None
        assert result['cleaner_client'].status == 'active'

    def test_beds_and_baths_default_to_one(self, cleaner):
        cc = invitation_service.create_invitation(
            cleaner.id, 'Min Home', 'min@example.com', address={'address': '1 Main St'}
        )
        home = invitation_service.accept_invitation(cc.invite_token, 'secret-pass', fake_hash)['home']
        assert home.num_beds == 1
        assert home.num_baths == 1

    def test_cancelled_invitation_signs_up_without_linking(self, invitation):
        invitation_service.cancel_invitation(invitation)

        result = invitation_service.accept_invitation(invitation.invite_token, 'secret-pass', fake_hash)
        cc = result['cleaner_client']

        assert result['user'].id is not None
        assert result['home'].preferred_cleaner_id is None
        assert cc.status == 'cancelled'
        assert cc.client_id is None
        assert cc.home_id is None
        assert cc.accepted_at is not None

    def test_second_acceptance_fails(self, invitation):
        invitation_service.accept_invitation(invitation.invite_token, 'secret-pass', fake_hash)
        with pytest.raises(AlreadyAccepted):
            invitation_service.accept_invitation(invitation.invite_token, 'other-pass', fake_hash)
        assert User.query.filter_by(email='jane@example.com').count() == 1

    def test_lost_claim_rolls_back(self, invitation):
        # Another request accepted after this one validated the token
        stale = SimpleNamespace(id=invitation.id, status='pending_invite')
        invitation_service._claim_invitation(invitation, is_cancelled=False)

        with pytest.raises(AlreadyAccepted):
            invitation_service._claim_invitation(stale, is_cancelled=False)

    def test_declined_invitation(self, invitation):
        invitation_service.decline_invitation(invitation.invite_token)
        with pytest.raises(Declined):
            invitation_service.accept_invitation(invitation.invite_token, 'secret-pass', fake_hash)

    def test_invalid_token(self, app):
        with pytest.raises(InvalidToken):
            invitation_service.accept_invitation('f' * 32, 'secret-pass', fake_hash)

    def test_existing_account(self, invitation, make_user):
        make_user(email='JANE@example.com')
        counts = (User.query.count(), UserBill.query.count(), UserHome.query.count())

        with pytest.raises(AccountExists):
            invitation_service.accept_invitation(invitation.invite_token, 'secret-pass', fake_hash)

        assert (User.query.count(), UserBill.query.count(), UserHome.query.count()) == counts
        cc = db.session.get(CleanerClient, invitation.id)
        assert cc.status == 'pending_invite'
        assert cc.accepted_at is None
        assert cc.client_id is None


class TestDeclineAndResend:
    """Test declining and resending invitations"""

    def test_decline_pending(self, invitation):
        invitation_service.decline_invitation(invitation.invite_token)
        assert db.session.get(CleanerClient, invitation.id).status == 'declined'

    @pytest.mark.parametrize('status', ['active', 'declined', 'cancelled', 'inactive'])
    def test_decline_requires_pending(self, invitation, status):
        invitation.status = status
        db.session.commit()
        with pytest.raises(InvalidTransition):
            invitation_service.decline_invitation(invitation.invite_token)

    def test_decline_missing_token(self, app):
        with pytest.raises(InvalidTransition):
            invitation_service.decline_invitation(None)

    def test_resend_stamps_reminder(self, invitation, cleaner):
        assert invitation.last_invite_reminder_at is None
        invitation_service.resend_invitation(invitation.id, cleaner.id)
        assert db.session.get(CleanerClient, invitation.id).last_invite_reminder_at is not None

    def test_resend_by_other_cleaner(self, invitation, make_user):
        other = make_user(type='cleaner')
        with pytest.raises(ServiceError):
            invitation_service.resend_invitation(invitation.id, other.id)

    def test_resend_after_acceptance(self, invitation, cleaner):
        invitation_service.accept_invitation(invitation.invite_token, 'secret-pass', fake_hash)
        with pytest.raises(ServiceError):
            invitation_service.resend_invitation(invitation.id, cleaner.id)


class TestListing:
    """Test relationship listing and ownership"""

    def test_active_first_then_newest(self, cleaner):
        first = invitation_service.create_invitation(cleaner.id, 'First', 'first@example.com')
        second = invitation_service.create_invitation(cleaner.id, 'Second', 'second@example.com')
        third = invitation_service.create_invitation(cleaner.id, 'Third', 'third@example.com')
        first.invited_at = first.invited_at - timedelta(days=3)
        second.invited_at = second.invited_at - timedelta(days=2)
        third.invited_at = third.invited_at - timedelta(days=1)
        first.status = 'active'
        db.session.commit()

        ids = [cc.id for cc in invitation_service.get_cleaner_clients(cleaner.id)]
        assert ids == [first.id, third.id, second.id]

    def test_status_filter(self, invitation, cleaner):
        assert invitation_service.get_cleaner_clients(cleaner.id, status='active') == []
        assert len(invitation_service.get_cleaner_clients(cleaner.id, status='pending_invite')) == 1

    def test_foreign_relationship_is_not_found(self, invitation, make_user):
        other = make_user(type='cleaner')
        with pytest.raises(NotFound) as exc:
            invitation_service.get_owned_relationship(invitation.id, other.id)
        assert exc.value.message == 'Client not found'


class TestDeactivation:
    """Test ending an active relationship"""

    @pytest.fixture
    def active_relationship(self, invitation, cleaner):
        result = invitation_service.accept_invitation(invitation.invite_token, 'secret-pass', fake_hash)
        cc = result['cleaner_client']
        schedule = RecurringSchedule(
            cleaner_client_id=cc.id,
            cleaner_id=cleaner.id,
            client_id=cc.client_id,
            home_id=cc.home_id,
            frequency='weekly',
            price=100.0,
        )
        db.session.add(schedule)
        db.session.commit()
        return cc, schedule

    def _appointment(self, cc, schedule, days, **kwargs):
        appointment = UserAppointment(
            user_id=cc.client_id,
            home_id=cc.home_id,
            cleaner_id=cc.cleaner_id,
            recurring_schedule_id=schedule.id,
            date=date.today() + timedelta(days=days),
            price=100.0,
            **kwargs
        )
        db.session.add(appointment)
        db.session.commit()
        return appointment

    def test_cancel_pending_invitation(self, invitation):
        invitation_service.cancel_invitation(invitation)
        assert db.session.get(CleanerClient, invitation.id).status == 'cancelled'

    def test_deactivate_removes_future_unpaid_appointments(self, active_relationship, cleaner):
        cc, schedule = active_relationship
        future = self._appointment(cc, schedule, 7)
        future_paid = self._appointment(cc, schedule, 14, paid=True)
        past = self._appointment(cc, schedule, -7)
        done = self._appointment(cc, schedule, 21, completed=True)

        db.session.add(UserCleanerAppointment(appointment_id=future.id, employee_id=cleaner.id))
        db.session.add(Payout(appointment_id=future.id, cleaner_id=cleaner.id, amount=80.0))
        db.session.add(EmployeeJobAssignment(appointment_id=future.id, business_owner_id=cleaner.id))
        bill = UserBill.query.filter_by(user_id=cc.client_id).one()
        bill.appointment_due = 150.0
        bill.total_due = 150.0
        db.session.commit()
        future_id = future.id

        result = invitation_service.deactivate_relationship(cc)

        assert result == {'cancelled_appointments': 1, 'skipped_paid_appointments': 1}
        assert db.session.get(CleanerClient, cc.id).status == 'inactive'
        assert db.session.get(RecurringSchedule, schedule.id).is_active is False
        assert db.session.get(UserAppointment, future_id) is None
        assert db.session.get(UserAppointment, future_paid.id) is not None
        assert db.session.get(UserAppointment, past.id) is not None
        assert db.session.get(UserAppointment, done.id) is not None
        assert UserCleanerAppointment.query.filter_by(appointment_id=future_id).count() == 0
        assert Payout.query.filter_by(appointment_id=future_id).count() == 0
        assert EmployeeJobAssignment.query.filter_by(appointment_id=future_id).count() == 0

        bill = UserBill.query.filter_by(user_id=cc.client_id).one()
        assert bill.appointment_due == 50.0
        assert bill.total_due == 50.0

    def test_bill_never_goes_negative(self, active_relationship):
        cc, schedule = active_relationship
        self._appointment(cc, schedule, 3)
        self._appointment(cc, schedule, 10)

        invitation_service.deactivate_relationship(cc)

        bill = UserBill.query.filter_by(user_id=cc.client_id).one()
        assert bill.appointment_due == 0.0
        assert bill.total_due == 0.0

    def test_counts_appointments_across_schedules(self, active_relationship, cleaner):
        cc, weekly = active_relationship
        monthly = RecurringSchedule(
            cleaner_client_id=cc.id,
            cleaner_id=cleaner.id,
            client_id=cc.client_id,
            home_id=cc.home_id,
            frequency='monthly',
            price=100.0,
        )
        db.session.add(monthly)
        db.session.commit()
        self._appointment(cc, weekly, 2)
        self._appointment(cc, weekly, 9)
        self._appointment(cc, monthly, 30)
        self._appointment(cc, monthly, 60, paid=True)

        result = invitation_service.deactivate_relationship(cc)

        assert result == {'cancelled_appointments': 3, 'skipped_paid_appointments': 1}
        assert RecurringSchedule.query.filter_by(cleaner_client_id=cc.id, is_active=True).count() == 0

    def test_removes_reports_of_deleted_appointments(self, active_relationship, cleaner):
        cc, schedule = active_relationship
        future = self._appointment(cc, schedule, 5)
        past = self._appointment(cc, schedule, -5)
        for appointment in (future, past):
            db.session.add(GuestNotLeftReport(appointment_id=appointment.id, reported_by=cleaner.id))
        db.session.commit()
        future_id = future.id

        invitation_service.deactivate_relationship(cc)

        assert GuestNotLeftReport.query.filter_by(appointment_id=future_id).count() == 0
        assert GuestNotLeftReport.query.filter_by(appointment_id=past.id).count() == 1

    def test_deactivate_requires_active(self, invitation):
        with pytest.raises(InvalidTransition):
            invitation_service.deactivate_relationship(invitation)


class TestRelationshipSettings:
    """Test editing relationship defaults and client homes"""

    def test_update_relationship_ignores_unknown_fields(self, invitation):
        invitation_service.update_relationship(invitation, {
            'defaultFrequency': 'biweekly',
            'autoPayEnabled': False,
            'status': 'active',
        })
        cc = db.session.get(CleanerClient, invitation.id)
        assert cc.default_frequency == 'biweekly'
        assert cc.auto_pay_enabled is False
        assert cc.status == 'pending_invite'

    @pytest.mark.parametrize('price, message', [
        (None, 'Price is required'),
        ('abc', 'Price must be a positive number'),
        (-5, 'Price must be a positive number'),
        ('nan', 'Price must be a positive number'),
    ])
    def test_default_price_validation(self, invitation, price, message):
        with pytest.raises(ServiceError) as exc:
            invitation_service.update_default_price(invitation, price)
        assert exc.value.message == message

    def test_default_price_accepts_numeric_strings(self, invitation):
        invitation_service.update_default_price(invitation, '135.50')
        assert db.session.get(CleanerClient, invitation.id).default_price == 135.5

    def test_pending_invitation_home_edit_keeps_notes(self, invitation):
        message = invitation_service.update_client_home(invitation, {'specialNotes': 'Gate code 1234'})
        assert message == 'Invitation notes updated'
        assert db.session.get(CleanerClient, invitation.id).invited_notes == 'Gate code 1234'

    def test_active_client_home_edit(self, invitation):
        result = invitation_service.accept_invitation(invitation.invite_token, 'secret-pass', fake_hash)
        message = invitation_service.update_client_home(result['cleaner_client'], {
            'keyLocation': 'Under the mat',
            'cleanersNeeded': 2,
        })
        home = db.session.get(UserHome, result['home'].id)
        assert message == 'Home updated successfully'
        assert home.key_location == 'Under the mat'
        assert home.cleaners_needed == 2

    @pytest.mark.parametrize('data, message', [
        ({'autoPayEnabled': 'yes'}, 'autoPayEnabled must be true or false'),
        ({'autoScheduleEnabled': None}, 'autoScheduleEnabled must be true or false'),
        ({'defaultDayOfWeek': 9}, 'defaultDayOfWeek must be a whole number from 0 to 6'),
        ({'defaultDayOfWeek': '2'}, 'defaultDayOfWeek must be a whole number from 0 to 6'),
        ({'defaultFrequency': 7}, 'defaultFrequency must be a string'),
        ({'defaultPrice': 'cheap'}, 'Price must be a positive number'),
    ])
    def test_update_relationship_rejects_bad_values(self, invitation, data, message):
        """One bad value leaves every setting untouched"""
        payload = {'defaultFrequency': 'monthly', **data}
        with pytest.raises(ServiceError) as exc:
            invitation_service.update_relationship(invitation, payload)
        assert exc.value.message == message
        assert exc.value.status_code == 400

        cc = db.session.get(CleanerClient, invitation.id)
        assert cc.default_frequency == 'weekly'
        assert cc.auto_pay_enabled is True


class TestBooking:
    """Test booking appointments for a linked client"""

    @pytest.fixture
    def linked(self, invitation):
        return invitation_service.accept_invitation(invitation.invite_token, 'secret-pass', fake_hash)

    def test_book_with_default_price(self, linked, cleaner):
        cc = linked['cleaner_client']
        day = date.today() + timedelta(days=3)

        appointment = invitation_service.book_appointment(cc, day, time_window='9am-1pm')

        assert appointment.date == day
        assert appointment.price == 120.0
        assert appointment.user_id == linked['user'].id
        assert appointment.home_id == linked['home'].id
        assert appointment.cleaner_id == cleaner.id
        assert appointment.time_constraint == '9am-1pm'
        assert UserCleanerAppointment.query.filter_by(
            appointment_id=appointment.id, employee_id=cleaner.id
        ).count() == 1

        bill = UserBill.query.filter_by(user_id=linked['user'].id).one()
        assert bill.appointment_due == 120.0
        assert bill.total_due == 120.0

    def test_bill_accumulates(self, linked):
        cc = linked['cleaner_client']
        invitation_service.book_appointment(cc, date.today() + timedelta(days=1), price='80')
        invitation_service.book_appointment(cc, date.today() + timedelta(days=8), price=95.5)

        bill = UserBill.query.filter_by(user_id=linked['user'].id).one()
        assert bill.total_due == 175.5

    def test_time_window_defaults_to_anytime(self, linked):
        appointment = invitation_service.book_appointment(linked['cleaner_client'], date.today(), price=100)
        assert appointment.time_constraint == 'anytime'

    def test_same_day_twice(self, linked):
        cc = linked['cleaner_client']
        day = date.today() + timedelta(days=2)
        invitation_service.book_appointment(cc, day)

        with pytest.raises(ServiceError) as exc:
            invitation_service.book_appointment(cc, day)
        assert exc.value.message == 'An appointment already exists for this date'
        assert UserAppointment.query.count() == 1

    def test_requires_price(self, linked):
        cc = linked['cleaner_client']
        cc.default_price = None
        db.session.commit()

        with pytest.raises(ServiceError) as exc:
            invitation_service.book_appointment(cc, date.today())
        assert exc.value.message == 'Price is required'
        assert UserAppointment.query.count() == 0

    def test_requires_date(self, linked):
        with pytest.raises(ServiceError) as exc:
            invitation_service.book_appointment(linked['cleaner_client'], None)
        assert exc.value.message == 'Date is required'

    def test_pending_invitation_cannot_be_booked(self, invitation):
        with pytest.raises(NotFound):
            invitation_service.book_appointment(invitation, date.today(), price=100)

    def test_client_without_home(self, cleaner):
        cc = invitation_service.create_invitation(cleaner.id, 'No Address', 'nohome@example.com')
        invitation_service.accept_invitation(cc.invite_token, 'secret-pass', fake_hash)

        with pytest.raises(ServiceError) as exc:
            invitation_service.book_appointment(cc, date.today(), price=100)
        assert exc.value.message == 'Client must have an account and home set up before booking'

    def test_appointments_grouped_around_today(self, linked):
        cc = linked['cleaner_client']
        today = date.today()
        for days in (-14, -7, 0, 7, 14):
            invitation_service.book_appointment(cc, today + timedelta(days=days), price=100)

        grouped = invitation_service.get_client_appointments(cc, today=today)

        assert [a.date for a in grouped['history']] == [today - timedelta(days=7), today - timedelta(days=14)]
        assert [a.date for a in grouped['today']] == [today]
        assert [a.date for a in grouped['upcoming']] == [today + timedelta(days=7), today + timedelta(days=14)]

    def test_no_home_means_no_appointments(self, invitation):
        assert invitation_service.get_client_appointments(invitation) == {
            'history': [], 'today': [], 'upcoming': [],
        }
