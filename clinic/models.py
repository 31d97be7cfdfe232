"""
Database models for the Dimedio clinic backend.

Clinical records (patients, diagnoses, drug inventory and the dispensing
ledger) share a single owner reference: a row belongs either to one
user working in individual mode or to one organization, never both.
Organizations, their members and invitations drive which of those
partitions a request is allowed to address.
"""
from __future__ import annotations

import secrets
from datetime import timedelta

from django.conf import settings
from django.contrib.auth.models import AbstractUser
from django.db import models
from django.db.models import Q
from django.utils import timezone


# Stored per-member permission flags.  ``view_all_data`` is kept in the
# bundle for compatibility but no gate reads it.
MEMBER_PERMISSION_FLAGS = (
    'write_off_drugs',
    'manage_members',
    'view_all_data',
    'diagnose_patients',
    'dispense_drugs',
    'manage_inventory',
    'view_reports',
)


def default_member_permissions() -> dict:
    return {
        'write_off_drugs': False,
        'manage_members': False,
        'view_all_data': True,
        'diagnose_patients': True,
        'dispense_drugs': True,
        'manage_inventory': False,
        'view_reports': True,
    }


def admin_member_permissions() -> dict:
    return {flag: True for flag in MEMBER_PERMISSION_FLAGS}


def default_organization_settings() -> dict:
    return {
        'shared_inventory': True,
        'shared_patients': True,
        'require_approval_for_members': True,
    }


def _invitation_token() -> str:
    return secrets.token_urlsafe(32)


def _invitation_expiry():
    return timezone.now() + timedelta(days=getattr(settings, 'INVITATION_TTL_DAYS', 7))


class User(AbstractUser):
    """Account with a global role.

    The username mirrors the email address; sign-in is by email.  A user
    is never hard-deleted, administrators disable the account through
    ``is_active`` instead.
    """
    ROLE_CHOICES = [
        ('user', 'User'),
        ('moderator', 'Moderator'),
        ('admin', 'Administrator'),
        ('super_admin', 'Super Administrator'),
    ]
    email = models.EmailField(unique=True)
    full_name = models.CharField(max_length=255, blank=True)
    email_verified = models.BooleanField(default=False)
    role = models.CharField(max_length=20, choices=ROLE_CHOICES, default='user', db_index=True)

    def display_name(self) -> str:
        return self.full_name or self.get_full_name() or self.email or self.username

    def __str__(self) -> str:
        return f"{self.email} ({self.role})"


class RoleChangeHistory(models.Model):
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='role_changes')
    changed_by = models.ForeignKey(
        User, null=True, blank=True, on_delete=models.SET_NULL, related_name='role_changes_made'
    )
    old_role = models.CharField(max_length=20)
    new_role = models.CharField(max_length=20)
    reason = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at', '-id']

    def __str__(self) -> str:
        return f"{self.user_id}: {self.old_role} -> {self.new_role}"


def _free_credit_allowance() -> int:
    return getattr(settings, 'FREE_DIAGNOSIS_CREDITS', 3)


class UserCredits(models.Model):
    """Diagnosis credit balance of one user.  Free credits are spent first."""
    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name='credit_balance')
    credits = models.PositiveIntegerField(default=0)
    free_credits = models.PositiveIntegerField(default=_free_credit_allowance)
    total_used = models.PositiveIntegerField(default=0)
    daily_usage = models.PositiveIntegerField(default=0)
    last_used_at = models.DateTimeField(null=True, blank=True)
    last_reset_date = models.DateField(default=timezone.localdate)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name_plural = 'user credits'

    @property
    def available(self) -> int:
        return self.credits + self.free_credits

    def __str__(self) -> str:
        return f"{self.user_id}: {self.credits} + {self.free_credits} free"


class CreditTransaction(models.Model):
    TYPE_CHOICES = [
        ('purchase', 'Purchase'),
        ('usage', 'Usage'),
        ('refund', 'Refund'),
        ('admin_grant', 'Admin grant'),
    ]
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='credit_transactions')
    type = models.CharField(max_length=20, choices=TYPE_CHOICES)
    # positive adds credits, negative spends them
    amount = models.IntegerField()
    description = models.TextField(blank=True)
    admin = models.ForeignKey(User, null=True, blank=True, on_delete=models.SET_NULL, related_name='+')
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        ordering = ['-created_at', '-id']

    def __str__(self) -> str:
        return f"{self.type} {self.amount:+d} for {self.user_id}"


class Organization(models.Model):
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    settings = models.JSONField(default=default_organization_settings, blank=True)
    created_by = models.ForeignKey(
        User, null=True, blank=True, on_delete=models.SET_NULL, related_name='created_organizations'
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self) -> str:
        return self.name


class OrganizationMember(models.Model):
    """Links a user to an organization with a role and a stored permission bundle.

    The bundle is persisted per member and is not derived from ``role``,
    so a plain member may carry an individually granted flag.
    """
    ROLE_CHOICES = [
        ('admin', 'Admin'),
        ('member', 'Member'),
    ]
    STATUS_CHOICES = [
        ('active', 'Active'),
        ('pending', 'Pending'),
        ('suspended', 'Suspended'),
    ]
    organization = models.ForeignKey(Organization, on_delete=models.CASCADE, related_name='members')
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='memberships')
    role = models.CharField(max_length=10, choices=ROLE_CHOICES, default='member')
    permissions = models.JSONField(default=default_member_permissions)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default='active', db_index=True)
    invited_by = models.ForeignKey(
        User, null=True, blank=True, on_delete=models.SET_NULL, related_name='+'
    )
    joined_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = [('organization', 'user')]
        ordering = ['-joined_at', '-id']

    def __str__(self) -> str:
        return f"{self.user} in {self.organization} as {self.role}"


class OrganizationInvitation(models.Model):
    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('accepted', 'Accepted'),
        ('declined', 'Declined'),
        ('expired', 'Expired'),
    ]
    organization = models.ForeignKey(Organization, on_delete=models.CASCADE, related_name='invitations')
    email = models.EmailField()
    invited_by = models.ForeignKey(User, on_delete=models.CASCADE, related_name='sent_invitations')
    role = models.CharField(max_length=10, choices=OrganizationMember.ROLE_CHOICES, default='member')
    permissions = models.JSONField(default=default_member_permissions)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default='pending', db_index=True)
    token = models.CharField(max_length=64, unique=True, default=_invitation_token)
    expires_at = models.DateTimeField(default=_invitation_expiry)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at', '-id']

    @property
    def is_overdue(self) -> bool:
        return self.expires_at <= timezone.now()

    def __str__(self) -> str:
        return f"{self.email} -> {self.organization} ({self.status})"


class ContextPreference(models.Model):
    """The persisted active context of a user (individual or one organization)."""
    MODE_CHOICES = [
        ('individual', 'Individual'),
        ('organization', 'Organization'),
    ]
    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name='context_preference')
    active_mode = models.CharField(max_length=12, choices=MODE_CHOICES, default='individual')
    active_organization = models.ForeignKey(
        Organization, null=True, blank=True, on_delete=models.SET_NULL, related_name='+'
    )
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self) -> str:
        return f"{self.user_id}: {self.active_mode} {self.active_organization_id or ''}".strip()


class OwnedRecord(models.Model):
    """Abstract base for records owned by exactly one user or one organization."""
    owner_user = models.ForeignKey(
        User, null=True, blank=True, on_delete=models.CASCADE, related_name='+'
    )
    organization = models.ForeignKey(
        Organization, null=True, blank=True, on_delete=models.CASCADE, related_name='+'
    )

    class Meta:
        abstract = True
        constraints = [
            models.CheckConstraint(
                condition=(
                    Q(owner_user__isnull=False, organization__isnull=True)
                    | Q(owner_user__isnull=True, organization__isnull=False)
                ),
                name='%(app_label)s_%(class)s_single_owner',
            ),
        ]

    @property
    def owner_mode(self) -> str:
        return 'organization' if self.organization_id else 'individual'


class Patient(OwnedRecord):
    GENDER_CHOICES = [
        ('male', 'Male'),
        ('female', 'Female'),
        ('other', 'Other'),
    ]
    patient_name = models.CharField(max_length=100)
    patient_surname = models.CharField(max_length=100, blank=True)
    patient_age = models.PositiveIntegerField(null=True, blank=True)
    patient_gender = models.CharField(max_length=20, choices=GENDER_CHOICES, blank=True)
    # Identifier supplied by the clinician (e.g. a personal code)
    external_id = models.CharField(max_length=50, blank=True, db_index=True)
    date_of_birth = models.DateField(null=True, blank=True)
    phone = models.CharField(max_length=32, blank=True)
    email = models.EmailField(blank=True)
    address = models.TextField(blank=True)
    emergency_contact = models.CharField(max_length=255, blank=True)
    insurance_info = models.CharField(max_length=255, blank=True)
    chronic_conditions = models.TextField(blank=True)
    medical_history = models.JSONField(default=list, blank=True)
    allergies = models.JSONField(default=list, blank=True)
    current_medications = models.JSONField(default=list, blank=True)
    last_diagnosis = models.ForeignKey(
        'Diagnosis', null=True, blank=True, on_delete=models.SET_NULL, related_name='+'
    )
    last_visit_date = models.DateTimeField(null=True, blank=True)
    is_active = models.BooleanField(default=True)
    created_by = models.ForeignKey(User, null=True, blank=True, on_delete=models.SET_NULL, related_name='+')
    updated_by = models.ForeignKey(User, null=True, blank=True, on_delete=models.SET_NULL, related_name='+')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta(OwnedRecord.Meta):
        ordering = ['-created_at', '-id']
        indexes = [
            models.Index(fields=['owner_user', 'patient_name']),
            models.Index(fields=['organization', 'patient_name']),
        ]

    @property
    def full_name(self) -> str:
        return f"{self.patient_name} {self.patient_surname}".strip()

    def __str__(self) -> str:
        return self.full_name


class Diagnosis(OwnedRecord):
    SEVERITY_CHOICES = [
        ('low', 'Low'),
        ('moderate', 'Moderate'),
        ('high', 'High'),
        ('critical', 'Critical'),
    ]
    ONSET_CHOICES = [
        ('sudden', 'Sudden'),
        ('gradual', 'Gradual'),
        ('', 'Unknown'),
    ]
    patient = models.ForeignKey(
        Patient, null=True, blank=True, on_delete=models.SET_NULL, related_name='diagnoses'
    )
    created_by = models.ForeignKey(User, null=True, blank=True, on_delete=models.SET_NULL, related_name='+')

    # Intake: demographics
    patient_name = models.CharField(max_length=100, blank=True)
    patient_surname = models.CharField(max_length=100, blank=True)
    patient_age = models.PositiveIntegerField(null=True, blank=True)
    patient_gender = models.CharField(max_length=20, blank=True)
    external_id = models.CharField(max_length=50, blank=True)
    date_of_birth = models.DateField(null=True, blank=True)

    # Intake: vitals
    blood_pressure_systolic = models.PositiveIntegerField(null=True, blank=True)
    blood_pressure_diastolic = models.PositiveIntegerField(null=True, blank=True)
    heart_rate = models.PositiveIntegerField(null=True, blank=True)
    temperature = models.DecimalField(max_digits=4, decimal_places=1, null=True, blank=True)
    respiratory_rate = models.PositiveIntegerField(null=True, blank=True)
    oxygen_saturation = models.PositiveIntegerField(null=True, blank=True)
    weight = models.DecimalField(max_digits=5, decimal_places=2, null=True, blank=True)
    height = models.PositiveIntegerField(null=True, blank=True)

    # Intake: history
    allergies = models.TextField(blank=True)
    current_medications = models.TextField(blank=True)
    chronic_conditions = models.TextField(blank=True)
    previous_surgeries = models.TextField(blank=True)
    previous_injuries = models.TextField(blank=True)

    # Intake: complaint
    complaint = models.TextField()
    symptoms = models.JSONField(default=list, blank=True)
    complaint_duration = models.CharField(max_length=100, blank=True)
    pain_scale = models.PositiveSmallIntegerField(null=True, blank=True)
    symptom_onset = models.CharField(max_length=20, choices=ONSET_CHOICES, blank=True)
    associated_symptoms = models.TextField(blank=True)

    # AI result
    primary_diagnosis = models.TextField(blank=True)
    differential_diagnoses = models.JSONField(default=list, blank=True)
    recommended_actions = models.JSONField(default=list, blank=True)
    treatment = models.JSONField(default=list, blank=True)
    drug_suggestions = models.JSONField(default=list, blank=True)
    inventory_drugs = models.JSONField(default=list, blank=True)
    additional_therapy = models.JSONField(default=list, blank=True)
    improved_patient_history = models.TextField(blank=True)
    severity_level = models.CharField(max_length=20, choices=SEVERITY_CHOICES, blank=True, db_index=True)
    confidence_score = models.DecimalField(max_digits=3, decimal_places=2, null=True, blank=True)
    workflow_id = models.CharField(max_length=100, blank=True)
    webhook_response = models.JSONField(null=True, blank=True)

    # Manual edit trail
    last_edited_by = models.ForeignKey(User, null=True, blank=True, on_delete=models.SET_NULL, related_name='+')
    last_edited_by_email = models.EmailField(blank=True)
    last_edited_at = models.DateTimeField(null=True, blank=True)
    edit_location = models.CharField(max_length=255, blank=True)

    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta(OwnedRecord.Meta):
        ordering = ['-created_at', '-id']
        verbose_name_plural = 'diagnoses'
        constraints = OwnedRecord.Meta.constraints + [
            models.CheckConstraint(
                condition=Q(pain_scale__isnull=True) | Q(pain_scale__lte=10),
                name='%(app_label)s_%(class)s_pain_scale_range',
            ),
        ]

    def __str__(self) -> str:
        return f"{self.patient_name} {self.patient_surname}: {self.primary_diagnosis or self.complaint[:40]}"


class DrugCategory(models.Model):
    name = models.CharField(max_length=255, unique=True)
    description = models.TextField(blank=True)

    class Meta:
        ordering = ['name']
        verbose_name_plural = 'drug categories'

    def __str__(self) -> str:
        return self.name


class Drug(OwnedRecord):
    """An inventory entry.  ``stock_quantity`` counts individual units."""
    UNIT_TYPE_CHOICES = [
        ('tablet', 'Tablet'),
        ('capsule', 'Capsule'),
        ('ml', 'Millilitre'),
        ('dose', 'Dose'),
        ('patch', 'Patch'),
        ('suppository', 'Suppository'),
        ('sachet', 'Sachet'),
        ('ampoule', 'Ampoule'),
        ('vial', 'Vial'),
    ]
    drug_name = models.CharField(max_length=255)
    drug_name_lv = models.CharField(max_length=255, blank=True)
    generic_name = models.CharField(max_length=255, blank=True)
    brand_name = models.CharField(max_length=255, blank=True)
    category = models.ForeignKey(
        DrugCategory, null=True, blank=True, on_delete=models.SET_NULL, related_name='drugs'
    )
    dosage_form = models.CharField(max_length=100, blank=True)
    strength = models.CharField(max_length=100, blank=True)
    active_ingredient = models.TextField(blank=True)
    indications = models.JSONField(default=list, blank=True)
    contraindications = models.JSONField(default=list, blank=True)
    dosage_adults = models.TextField(blank=True)
    dosage_children = models.TextField(blank=True)
    stock_quantity = models.IntegerField(default=0)
    unit_price = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    supplier = models.CharField(max_length=255, blank=True)
    batch_number = models.CharField(max_length=100, blank=True)
    expiry_date = models.DateField(null=True, blank=True)
    units_per_pack = models.PositiveIntegerField(default=20)
    unit_type = models.CharField(max_length=20, choices=UNIT_TYPE_CHOICES, default='tablet')
    whole_packs_count = models.PositiveIntegerField(default=0)
    loose_units_count = models.PositiveIntegerField(default=0)
    is_active = models.BooleanField(default=True, db_index=True)
    is_prescription_only = models.BooleanField(default=False)
    notes = models.TextField(blank=True)
    created_by = models.ForeignKey(User, null=True, blank=True, on_delete=models.SET_NULL, related_name='+')
    updated_by = models.ForeignKey(User, null=True, blank=True, on_delete=models.SET_NULL, related_name='+')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta(OwnedRecord.Meta):
        ordering = ['drug_name', 'id']
        constraints = OwnedRecord.Meta.constraints + [
            models.CheckConstraint(
                condition=Q(stock_quantity__gte=0),
                name='%(app_label)s_%(class)s_stock_not_negative',
            ),
        ]

    def split_packs(self) -> tuple[int, int]:
        """Return ``(whole_packs, loose_units)`` for the current stock."""
        per_pack = self.units_per_pack or 1
        return divmod(max(self.stock_quantity, 0), per_pack)

    def save(self, *args, **kwargs):
        self.whole_packs_count, self.loose_units_count = self.split_packs()
        update_fields = kwargs.get('update_fields')
        if update_fields is not None and 'stock_quantity' in update_fields:
            kwargs['update_fields'] = set(update_fields) | {'whole_packs_count', 'loose_units_count'}
        super().save(*args, **kwargs)

    def __str__(self) -> str:
        return f"{self.drug_name} {self.strength}".strip()


class DrugUsage(OwnedRecord):
    """Append-only ledger of dispense and write-off events."""
    drug = models.ForeignKey(Drug, null=True, blank=True, on_delete=models.SET_NULL, related_name='usage')
    drug_name = models.CharField(max_length=255, blank=True)
    diagnosis = models.ForeignKey(
        Diagnosis, null=True, blank=True, on_delete=models.SET_NULL, related_name='dispensing'
    )
    dispensed_by = models.ForeignKey(User, null=True, blank=True, on_delete=models.SET_NULL, related_name='+')
    quantity_dispensed = models.PositiveIntegerField()
    dispensed_date = models.DateTimeField(default=timezone.now, db_index=True)
    patient_info = models.JSONField(null=True, blank=True)
    notes = models.TextField(blank=True)
    is_write_off = models.BooleanField(default=False)
    write_off_reason = models.TextField(blank=True)
    write_off_by = models.ForeignKey(User, null=True, blank=True, on_delete=models.SET_NULL, related_name='+')
    write_off_date = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta(OwnedRecord.Meta):
        ordering = ['-dispensed_date', '-id']
        verbose_name_plural = 'drug usage'

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError('drug usage entries cannot be modified')
        super().save(*args, **kwargs)

    def __str__(self) -> str:
        kind = 'write-off' if self.is_write_off else 'dispense'
        return f"{kind} {self.quantity_dispensed} x {self.drug_name}"


class DiagnosisDrugSuggestion(models.Model):
    diagnosis = models.ForeignKey(Diagnosis, on_delete=models.CASCADE, related_name='drug_suggestion_rows')
    drug = models.ForeignKey(Drug, null=True, blank=True, on_delete=models.SET_NULL, related_name='+')
    drug_name = models.CharField(max_length=255)
    suggested_dosage = models.CharField(max_length=255, blank=True)
    treatment_duration = models.CharField(max_length=255, blank=True)
    administration_notes = models.TextField(blank=True)
    # 1 is the highest priority
    priority_level = models.PositiveSmallIntegerField(default=1)
    suggested_by_ai = models.BooleanField(default=True)
    manual_selection = models.BooleanField(default=False)
    created_by = models.ForeignKey(User, null=True, blank=True, on_delete=models.SET_NULL, related_name='+')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['priority_level', 'id']

    def __str__(self) -> str:
        return f"{self.drug_name} for diagnosis {self.diagnosis_id}"


class AuditEvent(models.Model):
    user = models.ForeignKey(User, null=True, blank=True, on_delete=models.SET_NULL, related_name='audit_events')
    action = models.CharField(max_length=64)
    object_type = models.CharField(max_length=64, null=True, blank=True)
    object_id = models.CharField(max_length=64, null=True, blank=True)
    detail = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        indexes = [
            models.Index(fields=['action', 'created_at']),
            models.Index(fields=['object_type', 'object_id']),
        ]

    def __str__(self) -> str:
        return f"{self.action} {self.object_type}:{self.object_id}"
