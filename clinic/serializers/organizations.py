from rest_framework import serializers

from clinic.models import MEMBER_PERMISSION_FLAGS, OrganizationInvitation, OrganizationMember
from clinic.serializers.fields import CleanCharField


class OrganizationSettingsSerializer(serializers.Serializer):
    shared_inventory = serializers.BooleanField(required=False)
    shared_patients = serializers.BooleanField(required=False)
    require_approval_for_members = serializers.BooleanField(required=False)


class OrganizationWriteSerializer(serializers.Serializer):
    name = CleanCharField(max_length=255)
    description = CleanCharField(required=False, allow_blank=True)
    settings = OrganizationSettingsSerializer(required=False)

    def validate_name(self, v):
        if len(v) < 2:
            raise serializers.ValidationError('Organization name must be at least 2 characters')
        return v


class OrganizationUpdateSerializer(OrganizationWriteSerializer):
    name = CleanCharField(max_length=255, required=False)


class PermissionFlagsSerializer(serializers.Serializer):
    write_off_drugs = serializers.BooleanField(required=False)
    manage_members = serializers.BooleanField(required=False)
    view_all_data = serializers.BooleanField(required=False)
    diagnose_patients = serializers.BooleanField(required=False)
    dispense_drugs = serializers.BooleanField(required=False)
    manage_inventory = serializers.BooleanField(required=False)
    view_reports = serializers.BooleanField(required=False)

    def to_internal_value(self, data):
        if isinstance(data, dict):
            unknown = set(data) - set(MEMBER_PERMISSION_FLAGS)
            if unknown:
                raise serializers.ValidationError(f"Unknown permission: {', '.join(sorted(unknown))}")
        return super().to_internal_value(data)


class MemberRoleSerializer(serializers.Serializer):
    role = serializers.ChoiceField(choices=['admin', 'member'])


class MemberStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=['active', 'pending', 'suspended'])


class InviteSerializer(serializers.Serializer):
    email = serializers.EmailField()
    role = serializers.ChoiceField(choices=['admin', 'member'], default='member')
    permissions = PermissionFlagsSerializer(required=False)


class SwitchModeSerializer(serializers.Serializer):
    mode = serializers.ChoiceField(choices=['individual', 'organization'])
    organization_id = serializers.IntegerField(min_value=1, required=False, allow_null=True)


class MemberSerializer(serializers.ModelSerializer):
    email = serializers.EmailField(source='user.email', read_only=True)
    full_name = serializers.CharField(source='user.full_name', read_only=True)
    invited_by_email = serializers.EmailField(source='invited_by.email', read_only=True, default=None)

    class Meta:
        model = OrganizationMember
        fields = [
            'id', 'organization', 'user', 'email', 'full_name', 'role', 'permissions', 'status',
            'invited_by', 'invited_by_email', 'joined_at', 'updated_at',
        ]


class InvitationSerializer(serializers.ModelSerializer):
    organization_name = serializers.CharField(source='organization.name', read_only=True)
    invited_by_email = serializers.EmailField(source='invited_by.email', read_only=True)

    class Meta:
        model = OrganizationInvitation
        fields = [
            'id', 'organization', 'organization_name', 'email', 'invited_by', 'invited_by_email',
            'role', 'permissions', 'status', 'token', 'expires_at', 'created_at',
        ]
