"""
URL mappings for the clinic API.

Trailing slashes are omitted throughout (``APPEND_SLASH`` is off).
"""
from django.urls import path

from .auth_views import (
    jwt_refresh_view,
    resend_view,
    sign_in_view,
    sign_out_view,
    sign_up_view,
    verify_email_view,
)
from .views import admin, credits, dashboard, diagnoses, drugs, health, organizations, patients, session

urlpatterns = [
    # Auth
    path('api/auth/signup', sign_up_view),
    path('api/auth/login', sign_in_view),
    path('api/auth/logout', sign_out_view),
    path('api/auth/resend', resend_view),
    path('api/auth/verify', verify_email_view),
    path('api/auth/jwt/refresh', jwt_refresh_view),

    # Session, mode & permissions
    path('api/session', session.session),
    path('api/mode', session.mode),
    path('api/mode/switch', session.switch_mode),
    path('api/permissions', session.permissions),

    # Diagnosis credits
    path('api/credits', credits.balance),
    path('api/credits/transactions', credits.transactions),

    # Patients
    path('api/patients', patients.patients),
    path('api/patients/<int:pk>', patients.patient_detail),
    path('api/patients/<int:pk>/diagnoses', patients.patient_history),

    # Diagnoses
    path('api/diagnoses', diagnoses.diagnoses),
    path('api/diagnoses/proxy', diagnoses.diagnosis_proxy),
    path('api/diagnoses/<int:pk>', diagnoses.diagnosis_detail),
    path('api/diagnoses/<int:pk>/suggestions', diagnoses.drug_suggestions),
    path('api/diagnoses/<int:pk>/suggestions/<int:suggestion_id>', diagnoses.drug_suggestion_delete),
    path('api/diagnoses/<int:pk>/dispense', drugs.diagnosis_dispense),

    # Drug inventory
    path('api/drugs', drugs.drugs),
    path('api/drugs/low-stock', drugs.low_stock),
    path('api/drugs/expired', drugs.expired),
    path('api/drugs/categories', drugs.categories),
    path('api/drugs/usage', drugs.usage_history),
    path('api/drugs/import', drugs.drug_import),
    path('api/drugs/undispensed', drugs.undispensed),
    path('api/drugs/<int:pk>', drugs.drug_detail),
    path('api/drugs/<int:pk>/stock', drugs.drug_stock),
    path('api/drugs/<int:pk>/usage', drugs.drug_usage),
    path('api/drugs/<int:pk>/write-off', drugs.drug_write_off),

    # Dashboard
    path('api/dashboard', dashboard.dashboard),
    path('api/dashboard/activity', dashboard.activity),

    # Organizations, members & invitations
    path('api/organizations', organizations.organization_list),
    path('api/organizations/<int:pk>', organizations.organization_detail),
    path('api/organizations/<int:pk>/stats', organizations.organization_stats),
    path('api/organizations/<int:pk>/members', organizations.members),
    path('api/organizations/<int:pk>/members/<int:member_id>', organizations.member_remove),
    path('api/organizations/<int:pk>/members/<int:member_id>/permissions', organizations.member_permissions),
    path('api/organizations/<int:pk>/members/<int:member_id>/role', organizations.member_role),
    path('api/organizations/<int:pk>/members/<int:member_id>/status', organizations.member_status),
    path('api/organizations/<int:pk>/leave', organizations.leave),
    path('api/organizations/<int:pk>/invitations', organizations.organization_invitations),
    path('api/organizations/<int:pk>/invitations/<int:invitation_id>', organizations.invitation_cancel),
    path('api/invitations', organizations.my_invitations),
    path('api/invitations/<str:token>', organizations.invitation_detail),
    path('api/invitations/<str:token>/accept', organizations.invitation_accept),
    path('api/invitations/<str:token>/decline', organizations.invitation_decline),

    # System administration
    path('api/admin/users', admin.users),
    path('api/admin/users/<int:pk>/role', admin.user_role),
    path('api/admin/users/<int:pk>/active', admin.user_active),
    path('api/admin/users/<int:pk>/credits', admin.user_credits),
    path('api/admin/role-history', admin.role_history),
    path('api/admin/stats', admin.stats),

    # Health
    path('healthz', health.healthz),
]
