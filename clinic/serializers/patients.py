from rest_framework import serializers

from clinic.models import Patient
from clinic.serializers.fields import CleanCharField, CleanListField


class PatientWriteSerializer(serializers.Serializer):
    patient_name = CleanCharField(max_length=100)
    patient_surname = CleanCharField(max_length=100, required=False, allow_blank=True)
    patient_age = serializers.IntegerField(min_value=0, max_value=150, required=False, allow_null=True)
    patient_gender = serializers.ChoiceField(choices=['male', 'female', 'other', ''], required=False)
    external_id = CleanCharField(max_length=50, required=False, allow_blank=True)
    date_of_birth = serializers.DateField(required=False, allow_null=True)
    phone = CleanCharField(max_length=32, required=False, allow_blank=True)
    email = serializers.EmailField(required=False, allow_blank=True)
    address = CleanCharField(required=False, allow_blank=True)
    emergency_contact = CleanCharField(max_length=255, required=False, allow_blank=True)
    insurance_info = CleanCharField(max_length=255, required=False, allow_blank=True)
    chronic_conditions = CleanCharField(required=False, allow_blank=True)
    medical_history = CleanListField()
    allergies = CleanListField()
    current_medications = CleanListField()
    is_active = serializers.BooleanField(required=False)

    def validate_patient_name(self, v):
        if len(v) < 2:
            raise serializers.ValidationError('Name must be at least 2 characters')
        return v


class PatientQuerySerializer(serializers.Serializer):
    q = serializers.CharField(max_length=100, required=False, allow_blank=True)


class PatientDeleteSerializer(serializers.Serializer):
    confirm = serializers.BooleanField(default=False)

    def validate_confirm(self, v):
        if not v:
            raise serializers.ValidationError('Deleting a patient must be confirmed')
        return v


class PatientSerializer(serializers.ModelSerializer):
    full_name = serializers.CharField(read_only=True)
    mode = serializers.CharField(source='owner_mode', read_only=True)
    diagnosis_count = serializers.IntegerField(read_only=True, default=None)
    last_diagnosis_at = serializers.DateTimeField(read_only=True, default=None)
    last_diagnosis_primary = serializers.CharField(read_only=True, default=None)
    last_diagnosis_severity = serializers.CharField(read_only=True, default=None)

    class Meta:
        model = Patient
        exclude = ['owner_user', 'organization', 'created_by', 'updated_by']
