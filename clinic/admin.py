"""
Django admin registrations for the clinic models.

Clinical records show their owner (user or organization) so that a
superuser can tell the individual and organization partitions apart.
"""

from django.contrib import admin

from .models import (
    AuditEvent,
    ContextPreference,
    CreditTransaction,
    Diagnosis,
    DiagnosisDrugSuggestion,
    Drug,
    DrugCategory,
    DrugUsage,
    Organization,
    OrganizationInvitation,
    OrganizationMember,
    Patient,
    RoleChangeHistory,
    User,
    UserCredits,
)


@admin.register(User)
class UserAdmin(admin.ModelAdmin):
    list_display = ('email', 'full_name', 'role', 'email_verified', 'is_active', 'date_joined')
    list_filter = ('role', 'email_verified', 'is_active')
    search_fields = ('email', 'full_name', 'username')


@admin.register(RoleChangeHistory)
class RoleChangeHistoryAdmin(admin.ModelAdmin):
    list_display = ('user', 'old_role', 'new_role', 'changed_by', 'created_at')
    list_filter = ('new_role',)
    search_fields = ('user__email', 'changed_by__email')


class OrganizationMemberInline(admin.TabularInline):
    model = OrganizationMember
    fk_name = 'organization'
    extra = 0
    raw_id_fields = ('user', 'invited_by')


@admin.register(Organization)
class OrganizationAdmin(admin.ModelAdmin):
    list_display = ('id', 'name', 'created_by', 'created_at')
    search_fields = ('name',)
    inlines = [OrganizationMemberInline]


@admin.register(OrganizationMember)
class OrganizationMemberAdmin(admin.ModelAdmin):
    list_display = ('user', 'organization', 'role', 'status', 'joined_at')
    list_filter = ('role', 'status')
    search_fields = ('user__email', 'organization__name')


@admin.register(OrganizationInvitation)
class OrganizationInvitationAdmin(admin.ModelAdmin):
    list_display = ('email', 'organization', 'role', 'status', 'expires_at', 'created_at')
    list_filter = ('status', 'role')
    search_fields = ('email', 'organization__name')


@admin.register(ContextPreference)
class ContextPreferenceAdmin(admin.ModelAdmin):
    list_display = ('user', 'active_mode', 'active_organization', 'updated_at')
    list_filter = ('active_mode',)


class OwnedRecordAdmin(admin.ModelAdmin):
    list_filter = ('organization',)
    raw_id_fields = ('owner_user', 'organization')


@admin.register(Patient)
class PatientAdmin(OwnedRecordAdmin):
    list_display = ('id', 'patient_name', 'patient_surname', 'external_id', 'owner_user', 'organization', 'created_at')
    search_fields = ('patient_name', 'patient_surname', 'external_id')


@admin.register(Diagnosis)
class DiagnosisAdmin(OwnedRecordAdmin):
    list_display = ('id', 'patient_name', 'primary_diagnosis', 'severity_level', 'owner_user', 'organization',
                    'created_at')
    list_filter = ('severity_level', 'organization')
    search_fields = ('patient_name', 'patient_surname', 'primary_diagnosis', 'complaint')


@admin.register(DrugCategory)
class DrugCategoryAdmin(admin.ModelAdmin):
    list_display = ('name', 'description')
    search_fields = ('name',)


@admin.register(Drug)
class DrugAdmin(OwnedRecordAdmin):
    list_display = ('drug_name', 'strength', 'stock_quantity', 'expiry_date', 'is_active', 'owner_user',
                    'organization')
    list_filter = ('is_active', 'is_prescription_only', 'category', 'organization')
    search_fields = ('drug_name', 'generic_name', 'brand_name')


@admin.register(DrugUsage)
class DrugUsageAdmin(OwnedRecordAdmin):
    list_display = ('drug_name', 'quantity_dispensed', 'is_write_off', 'dispensed_by', 'dispensed_date')
    list_filter = ('is_write_off', 'organization')

    # ledger rows are append-only
    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(DiagnosisDrugSuggestion)
class DiagnosisDrugSuggestionAdmin(admin.ModelAdmin):
    list_display = ('drug_name', 'diagnosis', 'priority_level', 'suggested_by_ai', 'manual_selection')
    list_filter = ('suggested_by_ai', 'manual_selection')


@admin.register(AuditEvent)
class AuditEventAdmin(admin.ModelAdmin):
    list_display = ('created_at', 'user', 'action', 'object_type', 'object_id')
    list_filter = ('action', 'object_type')
    search_fields = ('object_id', 'user__email')


@admin.register(UserCredits)
class UserCreditsAdmin(admin.ModelAdmin):
    list_display = ('user', 'credits', 'free_credits', 'total_used', 'daily_usage', 'last_used_at')
    search_fields = ('user__email',)
    raw_id_fields = ('user',)


@admin.register(CreditTransaction)
class CreditTransactionAdmin(admin.ModelAdmin):
    list_display = ('user', 'type', 'amount', 'admin', 'created_at')
    list_filter = ('type',)
    search_fields = ('user__email', 'description')
