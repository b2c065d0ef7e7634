"""
Cleaner-clients route tests for Kleanr
Tests inviting, accepting, listing and removing clients over HTTP
"""
from datetime import date, timedelta

import pytest
from sqlalchemy import event

from models import db, CleanerClient, Notification, RecurringSchedule, User, UserAppointment, UserBill
from services import invitation_service

BASE = '/api/v1/cleaner-clients'


@pytest.fixture
def invite(client, cleaner_headers):
    """Invite a client through the API and return the response body."""
    def _invite(**overrides):
        payload = {
            'name': 'Jane Client',
            'email': 'jane@example.com',
            'address': {'address': '12 Elm St', 'city': 'Springfield', 'state': 'IL', 'zipcode': '62701'},
            'beds': 3,
            'baths': 2,
            'price': 120,
        }
        payload.update(overrides)
        return client.post(BASE + '/invite', json=payload, headers=cleaner_headers)
    return _invite


@pytest.fixture
def invitation_token(invite):
    return invite().get_json()['cleanerClient']['inviteToken']


class TestInvite:
    """Test POST /invite"""

    def test_invite_sends_email(self, invite, outbox):
        response = invite()
        assert response.status_code == 201
        data = response.get_json()
        assert data['message'] == 'Invitation sent successfully'
        assert data['cleanerClient']['status'] == 'pending_invite'
        assert len(data['cleanerClient']['inviteToken']) == 32

        assert len(outbox['emails']) == 1
        email = outbox['emails'][0]
        assert email['to'] == 'jane@example.com'
        assert email['subject'] == 'Clara Cleaner invited you to Kleanr'
        assert data['cleanerClient']['inviteToken'] in email['html']

    @pytest.mark.parametrize('overrides, error', [
        ({'name': ''}, 'Client name is required'),
        ({'email': ''}, 'Client email is required'),
        ({'email': 'not-an-email'}, 'Invalid email format'),
    ])
    def test_invite_validation(self, invite, overrides, error):
        response = invite(**overrides)
        assert response.status_code == 400
        assert response.get_json()['error'] == error

    def test_duplicate_invite_conflicts(self, invite):
        invite()
        response = invite(email='JANE@example.com')
        assert response.status_code == 409
        assert response.get_json()['error'] == 'An invitation has already been sent to this email'

    def test_homeowner_cannot_invite(self, client, homeowner_headers):
        response = client.post(BASE + '/invite', json={'name': 'X', 'email': 'x@example.com'},
                               headers=homeowner_headers)
        assert response.status_code == 403
        assert response.get_json()['error'] == 'Cleaner access required'

    def test_invite_requires_auth(self, client):
        response = client.post(BASE + '/invite', json={'name': 'X', 'email': 'x@example.com'})
        assert response.status_code == 401


class TestPublicInvitation:
    """Test the unauthenticated invitation endpoints"""

    def test_get_invitation(self, client, invitation_token):
        response = client.get(BASE + '/invitations/' + invitation_token)
        assert response.status_code == 200
        data = response.get_json()
        assert data['valid'] is True
        assert data['isCancelled'] is False
        assert data['invitation']['cleanerName'] == 'Clara Cleaner'
        assert data['invitation']['address']['city'] == 'Springfield'

    def test_unknown_invitation(self, client, app):
        response = client.get(BASE + '/invitations/' + '0' * 32)
        assert response.status_code == 404
        assert response.get_json()['valid'] is False

    def test_cancelled_invitation_hides_cleaner(self, client, invitation_token, cleaner_headers):
        cc_id = CleanerClient.query.filter_by(invite_token=invitation_token).one().id
        client.delete('{}/{}'.format(BASE, cc_id), headers=cleaner_headers)

        data = client.get(BASE + '/invitations/' + invitation_token).get_json()
        assert data['valid'] is True
        assert data['isCancelled'] is True
        assert data['invitation']['cleanerName'] is None

    def test_accept_creates_account(self, client, invitation_token, cleaner, outbox):
        response = client.post(
            BASE + '/invitations/{}/accept'.format(invitation_token),
            json={'password': 'Str0ng&Pass', 'phone': '555-0199'},
        )
        assert response.status_code == 201
        data = response.get_json()
        assert data['user']['email'] == 'jane@example.com'
        assert data['user']['phone'] == '555-0199'
        assert data['home']['address'] == '12 Elm St'
        assert data['token']

        user = User.query.filter_by(email='jane@example.com').one()
        assert user.check_password('Str0ng&Pass')

        accepted = Notification.query.filter_by(user_id=cleaner.id, type='client_invitation_accepted').one()
        assert accepted.body == 'Jane Client accepted your invitation and joined Kleanr.'
        assert 'cleaner@example.com' in [e['to'] for e in outbox['emails']]

    def test_accept_requires_long_password(self, client, invitation_token):
        response = client.post(
            BASE + '/invitations/{}/accept'.format(invitation_token), json={'password': 'short'}
        )
        assert response.status_code == 400
        assert response.get_json()['error'] == 'Password must be at least 8 characters'

    def test_accept_twice(self, client, invitation_token):
        url = BASE + '/invitations/{}/accept'.format(invitation_token)
        client.post(url, json={'password': 'Str0ngPass'})
        response = client.post(url, json={'password': 'Str0ngPass'})
        assert response.status_code == 400
        assert response.get_json()['error'] == 'This invitation has already been accepted. Please log in.'

    def test_accept_with_existing_account(self, client, invitation_token, make_user):
        make_user(email='jane@example.com')
        response = client.post(
            BASE + '/invitations/{}/accept'.format(invitation_token), json={'password': 'Str0ngPass'}
        )
        assert response.status_code == 409

    def test_decline(self, client, invitation_token):
        response = client.post(BASE + '/invitations/{}/decline'.format(invitation_token))
        assert response.status_code == 200
        assert CleanerClient.query.filter_by(invite_token=invitation_token).one().status == 'declined'

        response = client.post(BASE + '/invitations/{}/decline'.format(invitation_token))
        assert response.status_code == 400
        assert response.get_json()['error'] == 'Invitation not found or already processed'


class TestManageClients:
    """Test the owning cleaner's relationship endpoints"""

    def _accept(self, client, token):
        response = client.post(BASE + '/invitations/{}/accept'.format(token), json={'password': 'Str0ngPass'})
        assert response.status_code == 201
        return response.get_json()

    def _cc_id(self, token):
        return CleanerClient.query.filter_by(invite_token=token).one().id

    def test_list_clients(self, client, invite, cleaner_headers):
        invite()
        invite(name='Bob Client', email='bob@example.com')

        response = client.get(BASE, headers=cleaner_headers)
        assert response.status_code == 200
        emails = {c['invitedEmail'] for c in response.get_json()['clients']}
        assert emails == {'jane@example.com', 'bob@example.com'}

    def test_list_rejects_unknown_status(self, client, cleaner, cleaner_headers):
        response = client.get(BASE + '/?status=bogus', headers=cleaner_headers)
        assert response.status_code == 400

    def test_get_client_includes_home(self, client, invitation_token, cleaner_headers):
        self._accept(client, invitation_token)
        response = client.get('{}/{}'.format(BASE, self._cc_id(invitation_token)), headers=cleaner_headers)
        assert response.status_code == 200
        data = response.get_json()['cleanerClient']
        assert data['status'] == 'active'
        assert data['home']['address'] == '12 Elm St'
        assert data['recurringSchedules'] == []

    def test_other_cleaner_sees_not_found(self, client, invitation_token, make_user, headers_for):
        other = make_user(type='cleaner')
        response = client.get('{}/{}'.format(BASE, self._cc_id(invitation_token)), headers=headers_for(other))
        assert response.status_code == 404
        assert response.get_json()['error'] == 'Client not found'

    def test_update_default_price(self, client, invitation_token, cleaner_headers):
        url = '{}/{}/default-price'.format(BASE, self._cc_id(invitation_token))
        response = client.patch(url, json={'price': 95.5}, headers=cleaner_headers)
        assert response.status_code == 200
        assert response.get_json()['defaultPrice'] == 95.5

        response = client.patch(url, json={'price': -1}, headers=cleaner_headers)
        assert response.status_code == 400
        assert response.get_json()['error'] == 'Price must be a positive number'

    def test_update_relationship(self, client, invitation_token, cleaner_headers):
        response = client.patch(
            '{}/{}'.format(BASE, self._cc_id(invitation_token)),
            json={'defaultFrequency': 'monthly', 'autoScheduleEnabled': False},
            headers=cleaner_headers,
        )
        data = response.get_json()['cleanerClient']
        assert data['defaultFrequency'] == 'monthly'
        assert data['autoScheduleEnabled'] is False

    def test_update_home(self, client, invitation_token, cleaner_headers):
        self._accept(client, invitation_token)
        response = client.patch(
            '{}/{}/home'.format(BASE, self._cc_id(invitation_token)),
            json={'keyLocation': 'Lockbox by the side gate'},
            headers=cleaner_headers,
        )
        assert response.get_json()['message'] == 'Home updated successfully'

    def test_delete_pending_cancels(self, client, invitation_token, cleaner, cleaner_headers):
        cc_id = self._cc_id(invitation_token)
        db.session.add(RecurringSchedule(cleaner_client_id=cc_id, cleaner_id=cleaner.id, frequency='weekly'))
        db.session.commit()
        schedule_writes = []

        def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            if 'recurring_schedules' in statement and not statement.lstrip().upper().startswith('SELECT'):
                schedule_writes.append(statement)

        event.listen(db.engine, 'before_cursor_execute', before_cursor_execute)
        try:
            response = client.delete('{}/{}'.format(BASE, cc_id), headers=cleaner_headers)
        finally:
            event.remove(db.engine, 'before_cursor_execute', before_cursor_execute)

        assert response.status_code == 200
        assert response.get_json()['message'] == 'Invitation cancelled'
        assert schedule_writes == []
        db.session.expire_all()
        assert db.session.get(CleanerClient, cc_id).status == 'cancelled'
        assert RecurringSchedule.query.filter_by(cleaner_client_id=cc_id).one().is_active is True

    def test_delete_active_deactivates(self, client, invitation_token, cleaner_headers):
        self._accept(client, invitation_token)
        response = client.delete('{}/{}'.format(BASE, self._cc_id(invitation_token)), headers=cleaner_headers)
        data = response.get_json()
        assert data['message'] == 'Client relationship deactivated'
        assert data['cancelledAppointments'] == 0
        assert 'note' not in data

    def test_delete_active_counts_every_schedule(self, client, invitation_token, cleaner, cleaner_headers):
        body = self._accept(client, invitation_token)
        cc_id = self._cc_id(invitation_token)
        for frequency, offsets in (('weekly', (3, 10)), ('monthly', (30,))):
            schedule = RecurringSchedule(cleaner_client_id=cc_id, cleaner_id=cleaner.id, frequency=frequency)
            db.session.add(schedule)
            db.session.flush()
            for days in offsets:
                db.session.add(UserAppointment(
                    user_id=body['user']['id'],
                    home_id=body['home']['id'],
                    recurring_schedule_id=schedule.id,
                    date=date.today() + timedelta(days=days),
                    price=100.0,
                ))
        db.session.commit()

        response = client.delete('{}/{}'.format(BASE, cc_id), headers=cleaner_headers)

        assert response.status_code == 200
        assert response.get_json()['cancelledAppointments'] == 3
        assert UserAppointment.query.count() == 0

    def test_delete_declined_is_rejected(self, client, invitation_token, cleaner_headers):
        client.post(BASE + '/invitations/{}/decline'.format(invitation_token))
        response = client.delete('{}/{}'.format(BASE, self._cc_id(invitation_token)), headers=cleaner_headers)
        assert response.status_code == 400

    def test_resend_invite(self, client, invitation_token, cleaner_headers, outbox):
        response = client.post(
            '{}/{}/resend-invite'.format(BASE, self._cc_id(invitation_token)), headers=cleaner_headers
        )
        assert response.status_code == 200
        assert outbox['emails'][-1]['subject'] == 'Reminder: Clara Cleaner invited you to Kleanr'

    def test_resend_after_accept_fails(self, client, invitation_token, cleaner_headers):
        self._accept(client, invitation_token)
        response = client.post(
            '{}/{}/resend-invite'.format(BASE, self._cc_id(invitation_token)), headers=cleaner_headers
        )
        assert response.status_code == 400
        assert response.get_json()['error'] == 'Invitation not found or already accepted'


class TestMyCleaner:
    """Test the homeowner's view of their cleaner"""

    def test_linked_homeowner(self, client, invitation_token, headers_for):
        body = client.post(
            BASE + '/invitations/{}/accept'.format(invitation_token), json={'password': 'Str0ngPass'}
        ).get_json()
        user = db.session.get(User, body['user']['id'])

        response = client.get(BASE + '/my-cleaner', headers=headers_for(user))
        data = response.get_json()
        assert data['cleaner']['firstName'] == 'Clara'
        assert data['cleaner']['averageRating'] is None
        assert data['cleaner']['totalReviews'] == 0
        assert data['relationship']['status'] == 'active'

    def test_unlinked_homeowner(self, client, homeowner_headers):
        response = client.get(BASE + '/my-cleaner', headers=homeowner_headers)
        assert response.get_json() == {'cleaner': None}


class TestBookForClient:
    """Test POST /<id>/book and GET /<id>/full"""

    @pytest.fixture
    def linked_id(self, client, invitation_token):
        response = client.post(
            BASE + '/invitations/{}/accept'.format(invitation_token), json={'password': 'Str0ngPass'}
        )
        assert response.status_code == 201
        return CleanerClient.query.filter_by(invite_token=invitation_token).one().id

    def test_book(self, client, linked_id, cleaner_headers):
        day = date.today() + timedelta(days=4)
        response = client.post(
            '{}/{}/book'.format(BASE, linked_id),
            json={'date': day.isoformat(), 'timeWindow': '10am-2pm'},
            headers=cleaner_headers,
        )
        assert response.status_code == 201
        appointment = response.get_json()['appointment']
        assert appointment['date'] == day.isoformat()
        assert appointment['price'] == 120.0
        assert appointment['clientName'] == 'Jane Client'
        assert appointment['homeAddress'] == '12 Elm St, Springfield'
        assert appointment['timeWindow'] == '10am-2pm'

        client_id = db.session.get(CleanerClient, linked_id).client_id
        assert UserBill.query.filter_by(user_id=client_id).one().total_due == 120.0

    @pytest.mark.parametrize('payload, error', [
        ({}, 'Date is required'),
        ({'date': 'next tuesday'}, 'Invalid date'),
        ({'date': '2030-01-15', 'price': -20}, 'Price must be a positive number'),
    ])
    def test_book_validation(self, client, linked_id, cleaner_headers, payload, error):
        response = client.post('{}/{}/book'.format(BASE, linked_id), json=payload, headers=cleaner_headers)
        assert response.status_code == 400
        assert response.get_json()['error'] == error

    def test_book_pending_invitation(self, client, invitation_token, cleaner_headers):
        cc_id = CleanerClient.query.filter_by(invite_token=invitation_token).one().id
        response = client.post(
            '{}/{}/book'.format(BASE, cc_id), json={'date': '2030-01-15'}, headers=cleaner_headers
        )
        assert response.status_code == 404
        assert response.get_json()['error'] == 'Active client relationship not found'

    def test_other_cleaner_cannot_book(self, client, linked_id, make_user, headers_for):
        other = make_user(type='cleaner')
        response = client.post(
            '{}/{}/book'.format(BASE, linked_id), json={'date': '2030-01-15'}, headers=headers_for(other)
        )
        assert response.status_code == 404
        assert response.get_json()['error'] == 'Client not found'

    def test_full_detail_groups_appointments(self, client, linked_id, cleaner_headers):
        today = date.today()
        for days in (-7, 0, 7):
            client.post(
                '{}/{}/book'.format(BASE, linked_id),
                json={'date': (today + timedelta(days=days)).isoformat()},
                headers=cleaner_headers,
            )

        response = client.get('{}/{}/full'.format(BASE, linked_id), headers=cleaner_headers)

        assert response.status_code == 200
        data = response.get_json()
        assert data['cleanerClient']['status'] == 'active'
        assert data['client']['email'] == 'jane@example.com'
        assert data['home']['address'] == '12 Elm St'
        assert data['recurringSchedules'] == []
        groups = data['appointments']
        assert [a['date'] for a in groups['history']] == [(today - timedelta(days=7)).isoformat()]
        assert [a['date'] for a in groups['today']] == [today.isoformat()]
        assert [a['date'] for a in groups['upcoming']] == [(today + timedelta(days=7)).isoformat()]

    def test_full_detail_for_pending_invitation(self, client, invitation_token, cleaner_headers):
        cc_id = CleanerClient.query.filter_by(invite_token=invitation_token).one().id
        data = client.get('{}/{}/full'.format(BASE, cc_id), headers=cleaner_headers).get_json()
        assert data['client'] is None
        assert data['appointments'] == {'history': [], 'today': [], 'upcoming': []}
