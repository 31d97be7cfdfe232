"""
Integration tests for the Dimedio API.

These exercise the behaviours that cross the HTTP boundary: sign-up and
email verification, context switching, the error envelope, context
scoped records and the member permission gate.  They use Django REST
Framework's APIClient within the APITestCase base class.
"""
import re
from datetime import timedelta
from urllib.parse import unquote

from django.core import mail
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient, APITestCase

from clinic.models import (
    Drug,
    Organization,
    OrganizationInvitation,
    OrganizationMember,
    Patient,
    User,
    default_member_permissions,
)
from clinic.services import organizations

PASSWORD = 'Str0ng-Passw0rd!'


class SignUpFlowTests(APITestCase):
    def test_sign_up_verify_and_sign_in(self):
        r = self.client.post('/api/auth/signup', {
            'email': 'New.User@example.com', 'password': PASSWORD, 'full_name': 'New User',
        }, format='json')
        self.assertEqual(r.status_code, status.HTTP_201_CREATED)
        self.assertTrue(r.data['ok'])
        self.assertFalse(r.data['user']['email_verified'])
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ['new.user@example.com'])

        r = self.client.post('/api/auth/login', {'email': 'new.user@example.com', 'password': PASSWORD},
                             format='json')
        self.assertEqual(r.status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertEqual(r.data['error']['message'], 'Email not confirmed')

        token = unquote(re.search(r'token=(\S+)', mail.outbox[0].body).group(1))
        r = self.client.get('/api/auth/verify', {'token': token})
        self.assertEqual(r.status_code, status.HTTP_200_OK)
        self.assertTrue(r.data['user']['email_verified'])

        r = self.client.post('/api/auth/login', {'email': 'new.user@example.com', 'password': PASSWORD},
                             format='json')
        self.assertEqual(r.status_code, status.HTTP_200_OK)
        self.assertIn('jwt_access', r.data)
        self.assertEqual(r.data['mode']['activeMode'], 'individual')
        self.assertTrue(all(r.data['permissions'].values()))

        # the API token works for later requests
        client = APIClient()
        client.credentials(HTTP_AUTHORIZATION=f"Token {r.data['token']}")
        self.assertEqual(client.get('/api/session').status_code, status.HTTP_200_OK)

    def test_duplicate_sign_up_is_rejected(self):
        User.objects.create_user(username='taken@example.com', email='taken@example.com', password=PASSWORD)
        r = self.client.post('/api/auth/signup', {'email': 'taken@example.com', 'password': PASSWORD},
                             format='json')
        self.assertEqual(r.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(r.data['error']['code'], 'invalid')

    def test_wrong_password(self):
        User.objects.create_user(username='a@example.com', email='a@example.com', password=PASSWORD,
                                 email_verified=True)
        r = self.client.post('/api/auth/login', {'email': 'a@example.com', 'password': 'nope'}, format='json')
        self.assertEqual(r.status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertEqual(r.data, {'ok': False, 'error': {
            'code': 'authentication_failed', 'message': 'Invalid email or password'}})

    def test_tampered_verification_token(self):
        r = self.client.post('/api/auth/verify', {'token': 'forged'}, format='json')
        self.assertEqual(r.status_code, status.HTTP_400_BAD_REQUEST)


class ClinicAPITests(APITestCase):
    def setUp(self) -> None:
        self.doctor = User.objects.create_user(
            username='doctor@example.com', email='doctor@example.com', password=PASSWORD, email_verified=True,
        )
        self.nurse = User.objects.create_user(
            username='nurse@example.com', email='nurse@example.com', password=PASSWORD, email_verified=True,
        )
        self.org = organizations.create_organization(self.doctor, 'Riga Clinic')
        OrganizationMember.objects.create(
            organization=self.org, user=self.nurse, role='member', permissions=default_member_permissions(),
        )
        self.client = APIClient()
        self.client.force_authenticate(user=self.doctor)
        self.nurse_client = APIClient()
        self.nurse_client.force_authenticate(user=self.nurse)

    def switch(self, client, organization_id=None):
        body = {'mode': 'organization', 'organization_id': organization_id} if organization_id else {'mode': 'individual'}
        return client.post('/api/mode/switch', body, format='json')

    def test_anonymous_requests_are_refused(self):
        r = APIClient().get('/api/patients')
        self.assertIn(r.status_code, (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN))
        self.assertFalse(r.data['ok'])

    def test_switching_to_foreign_organization(self):
        other = Organization.objects.create(name='Elsewhere')
        r = self.switch(self.client, other.id)
        self.assertEqual(r.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(r.data['error']['code'], 'not_a_member')
        self.assertEqual(self.client.get('/api/mode').data['activeMode'], 'individual')

    def test_mode_and_permissions(self):
        r = self.switch(self.nurse_client, self.org.id)
        self.assertEqual(r.status_code, status.HTTP_200_OK)
        self.assertEqual(r.data['activeOrganization'], {'id': self.org.id, 'name': 'Riga Clinic'})
        self.assertEqual(r.data['membershipStatus'], 'organization_member')

        r = self.nurse_client.get('/api/permissions')
        self.assertEqual(r.data['mode'], 'organization')
        self.assertFalse(r.data['permissions']['manage_inventory'])
        self.assertTrue(r.data['permissions']['dispense_drugs'])
        self.assertEqual(r.data['membership']['role'], 'member')

    def test_patients_are_scoped_to_the_active_context(self):
        r = self.client.post('/api/patients', {'patient_name': 'Private', 'patient_surname': 'Case'}, format='json')
        self.assertEqual(r.status_code, status.HTTP_201_CREATED)
        self.switch(self.client, self.org.id)
        self.client.post('/api/patients', {'patient_name': 'Shared', 'patient_surname': 'Case'}, format='json')

        r = self.client.get('/api/patients', {'q': 'case'})
        self.assertEqual([p['patient_name'] for p in r.data['patients']], ['Shared'])

        self.switch(self.nurse_client, self.org.id)
        r = self.nurse_client.get('/api/patients')
        self.assertEqual(r.data['total'], 1)

        private = Patient.objects.get(patient_name='Private')
        r = self.client.get(f'/api/patients/{private.pk}')
        self.assertEqual(r.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(r.data['error']['code'], 'not_found')

    def test_patient_delete_needs_confirmation(self):
        patient_id = self.client.post('/api/patients', {'patient_name': 'Anna'}, format='json').data['patient']['id']
        r = self.client.delete(f'/api/patients/{patient_id}')
        self.assertEqual(r.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertTrue(Patient.objects.filter(pk=patient_id).exists())
        r = self.client.delete(f'/api/patients/{patient_id}', {'confirm': True}, format='json')
        self.assertEqual(r.status_code, status.HTTP_200_OK)
        self.assertFalse(Patient.objects.filter(pk=patient_id).exists())

    def test_dispensing_more_than_stock(self):
        r = self.client.post('/api/drugs', {'drug_name': 'Paracetamol', 'stock_quantity': 5}, format='json')
        drug_id = r.data['drug']['id']
        r = self.client.post(f'/api/drugs/{drug_id}/usage', {'quantity': 6}, format='json')
        self.assertEqual(r.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(r.data['error']['code'], 'insufficient_stock')
        self.assertEqual(Drug.objects.get(pk=drug_id).stock_quantity, 5)

        r = self.client.post(f'/api/drugs/{drug_id}/usage', {'quantity': 5}, format='json')
        self.assertEqual(r.status_code, status.HTTP_201_CREATED)
        self.assertEqual(Drug.objects.get(pk=drug_id).stock_quantity, 0)

    def test_member_without_inventory_permission(self):
        self.switch(self.nurse_client, self.org.id)
        r = self.nurse_client.post('/api/drugs', {'drug_name': 'Ibuprofen', 'stock_quantity': 1}, format='json')
        self.assertEqual(r.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(r.data['error']['message'], "You don't have permission to manage the drug inventory")
        self.assertFalse(Drug.objects.exists())

    def test_member_without_report_permission(self):
        member = OrganizationMember.objects.get(organization=self.org, user=self.nurse)
        self.client.patch(f'/api/organizations/{self.org.id}/members/{member.pk}/permissions',
                          {'view_reports': False}, format='json')
        self.switch(self.nurse_client, self.org.id)
        r = self.nurse_client.get('/api/drugs/usage')
        self.assertEqual(r.status_code, status.HTTP_403_FORBIDDEN)

    def test_expired_invitation(self):
        invitee = User.objects.create_user(
            username='late@example.com', email='late@example.com', password=PASSWORD, email_verified=True,
        )
        r = self.client.post(f'/api/organizations/{self.org.id}/invitations', {'email': 'late@example.com'},
                             format='json')
        self.assertEqual(r.status_code, status.HTTP_201_CREATED)
        invitation = OrganizationInvitation.objects.get(email='late@example.com')
        invitation.expires_at = timezone.now() - timedelta(hours=1)
        invitation.save()

        client = APIClient()
        client.force_authenticate(user=invitee)
        r = client.post(f'/api/invitations/{invitation.token}/accept')
        self.assertEqual(r.status_code, status.HTTP_410_GONE)
        self.assertEqual(r.data['error']['code'], 'expired')
        self.assertFalse(OrganizationMember.objects.filter(user=invitee).exists())
        invitation.refresh_from_db()
        self.assertEqual(invitation.status, 'expired')

    def test_invitation_accept(self):
        invitee = User.objects.create_user(
            username='new@example.com', email='new@example.com', password=PASSWORD, email_verified=True,
        )
        self.client.post(f'/api/organizations/{self.org.id}/invitations',
                         {'email': 'new@example.com', 'permissions': {'manage_inventory': True}}, format='json')
        invitation = OrganizationInvitation.objects.get(email='new@example.com')

        r = APIClient().get(f'/api/invitations/{invitation.token}')
        self.assertEqual(r.data['invitation']['organization']['name'], 'Riga Clinic')

        client = APIClient()
        client.force_authenticate(user=invitee)
        r = client.post(f'/api/invitations/{invitation.token}/accept')
        self.assertEqual(r.status_code, status.HTTP_200_OK)
        self.assertTrue(client.get('/api/mode').data['canSwitchToOrganization'])

    def test_dashboard(self):
        self.client.post('/api/patients', {'patient_name': 'Anna', 'patient_gender': 'female'}, format='json')
        r = self.client.get('/api/dashboard')
        self.assertEqual(r.status_code, status.HTTP_200_OK)
        self.assertEqual(r.data['totalPatients'], 1)
        self.assertEqual(r.data['mode'], 'individual')

    def test_admin_endpoints_need_global_role(self):
        self.assertEqual(self.client.get('/api/admin/users').status_code, status.HTTP_403_FORBIDDEN)
        self.doctor.role = 'admin'
        self.doctor.save()
        r = self.client.post(f'/api/admin/users/{self.nurse.pk}/role', {'role': 'moderator'}, format='json')
        self.assertEqual(r.status_code, status.HTTP_200_OK)
        self.assertEqual(r.data['user']['role'], 'moderator')

    def test_member_manager_cannot_promote_themselves(self):
        member = OrganizationMember.objects.get(organization=self.org, user=self.nurse)
        member.permissions = {**member.permissions, 'manage_members': True}
        member.save()
        r = self.nurse_client.post(f'/api/organizations/{self.org.id}/members/{member.pk}/role',
                                   {'role': 'admin'}, format='json')
        self.assertEqual(r.status_code, status.HTTP_403_FORBIDDEN)
        member.refresh_from_db()
        self.assertEqual(member.role, 'member')

    def test_credit_balance_and_grant(self):
        r = self.nurse_client.get('/api/credits')
        self.assertEqual(r.status_code, status.HTTP_200_OK)
        self.assertTrue(r.data['canUse'])
        self.assertEqual(r.data['freeCredits'], 3)
        self.assertEqual(r.data['dailyLimit'], 10)

        self.doctor.role = 'admin'
        self.doctor.save()
        r = self.client.post(f'/api/admin/users/{self.nurse.pk}/credits', {'amount': 20}, format='json')
        self.assertEqual(r.status_code, status.HTTP_200_OK)
        self.assertEqual(r.data['credits'], 20)
        r = self.nurse_client.get('/api/credits/transactions')
        self.assertEqual([t['type'] for t in r.data['transactions']], ['admin_grant'])
        self.assertEqual(r.data['transactions'][0]['grantedBy'], 'doctor@example.com')

    def test_health(self):
        r = self.client.get('/healthz')
        self.assertEqual(r.status_code, status.HTTP_200_OK)
        self.assertEqual(r.json(), {'ok': True, 'db': True})
