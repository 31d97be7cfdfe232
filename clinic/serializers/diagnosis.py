from rest_framework import serializers

from clinic.models import Diagnosis, DiagnosisDrugSuggestion
from clinic.serializers.fields import CleanCharField, CleanListField


class DiagnosisIntakeSerializer(serializers.Serializer):
    complaint = CleanCharField()
    symptoms = CleanListField()
    patient_id = serializers.IntegerField(min_value=1, required=False, allow_null=True, source='patient_ref')
    patient_name = CleanCharField(max_length=100, required=False, allow_blank=True)
    patient_surname = CleanCharField(max_length=100, required=False, allow_blank=True)
    patient_age = serializers.IntegerField(min_value=0, max_value=150, required=False, allow_null=True)
    patient_gender = serializers.ChoiceField(choices=['male', 'female', 'other', ''], required=False)
    external_id = CleanCharField(max_length=50, required=False, allow_blank=True)
    date_of_birth = serializers.DateField(required=False, allow_null=True)

    blood_pressure_systolic = serializers.IntegerField(min_value=40, max_value=300, required=False, allow_null=True)
    blood_pressure_diastolic = serializers.IntegerField(min_value=20, max_value=200, required=False, allow_null=True)
    heart_rate = serializers.IntegerField(min_value=20, max_value=300, required=False, allow_null=True)
    temperature = serializers.DecimalField(max_digits=4, decimal_places=1, min_value=25, max_value=45,
                                           required=False, allow_null=True)
    respiratory_rate = serializers.IntegerField(min_value=1, max_value=100, required=False, allow_null=True)
    oxygen_saturation = serializers.IntegerField(min_value=0, max_value=100, required=False, allow_null=True)
    weight = serializers.DecimalField(max_digits=5, decimal_places=2, min_value=0, required=False, allow_null=True)
    height = serializers.IntegerField(min_value=0, max_value=300, required=False, allow_null=True)

    allergies = CleanCharField(required=False, allow_blank=True)
    current_medications = CleanCharField(required=False, allow_blank=True)
    chronic_conditions = CleanCharField(required=False, allow_blank=True)
    previous_surgeries = CleanCharField(required=False, allow_blank=True)
    previous_injuries = CleanCharField(required=False, allow_blank=True)

    complaint_duration = CleanCharField(max_length=100, required=False, allow_blank=True)
    pain_scale = serializers.IntegerField(min_value=0, max_value=10, required=False, allow_null=True)
    symptom_onset = serializers.ChoiceField(choices=['sudden', 'gradual', ''], required=False)
    associated_symptoms = CleanCharField(required=False, allow_blank=True)

    def validate_complaint(self, v):
        if not v:
            raise serializers.ValidationError('Complaint is required')
        return v


class DiagnosisEditSerializer(DiagnosisIntakeSerializer):
    complaint = CleanCharField(required=False)
    primary_diagnosis = CleanCharField(required=False, allow_blank=True)
    differential_diagnoses = CleanListField()
    recommended_actions = CleanListField()
    treatment = CleanListField()
    improved_patient_history = CleanCharField(required=False, allow_blank=True)
    severity_level = serializers.ChoiceField(choices=[c for c, _ in Diagnosis.SEVERITY_CHOICES], required=False)
    edit_location = CleanCharField(max_length=255, required=False, allow_blank=True)


class DiagnosisQuerySerializer(serializers.Serializer):
    patient_id = serializers.IntegerField(min_value=1, required=False)
    severity = serializers.ChoiceField(choices=[c for c, _ in Diagnosis.SEVERITY_CHOICES], required=False)
    q = serializers.CharField(max_length=100, required=False, allow_blank=True)


class DrugSuggestionWriteSerializer(serializers.Serializer):
    drug_id = serializers.IntegerField(min_value=1, required=False, allow_null=True)
    drug_name = CleanCharField(max_length=255, required=False, allow_blank=True)
    suggested_dosage = CleanCharField(max_length=255, required=False, allow_blank=True)
    treatment_duration = CleanCharField(max_length=255, required=False, allow_blank=True)
    administration_notes = CleanCharField(required=False, allow_blank=True)
    priority_level = serializers.IntegerField(min_value=1, default=1)
    suggested_by_ai = serializers.BooleanField(default=False)
    manual_selection = serializers.BooleanField(default=True)

    def validate(self, attrs):
        if not attrs.get('drug_id') and not attrs.get('drug_name'):
            raise serializers.ValidationError('A drug or drug name is required')
        return attrs


class DiagnosisDrugSuggestionSerializer(serializers.ModelSerializer):
    class Meta:
        model = DiagnosisDrugSuggestion
        fields = [
            'id', 'drug', 'drug_name', 'suggested_dosage', 'treatment_duration', 'administration_notes',
            'priority_level', 'suggested_by_ai', 'manual_selection', 'created_at',
        ]


class DiagnosisSerializer(serializers.ModelSerializer):
    mode = serializers.CharField(source='owner_mode', read_only=True)

    class Meta:
        model = Diagnosis
        exclude = ['owner_user', 'organization', 'webhook_response']
