from rest_framework import serializers

from clinic.models import Drug, DrugCategory, DrugUsage
from clinic.serializers.fields import CleanCharField, CleanListField


class DrugWriteSerializer(serializers.Serializer):
    drug_name = CleanCharField(max_length=255)
    drug_name_lv = CleanCharField(max_length=255, required=False, allow_blank=True)
    generic_name = CleanCharField(max_length=255, required=False, allow_blank=True)
    brand_name = CleanCharField(max_length=255, required=False, allow_blank=True)
    category_id = serializers.PrimaryKeyRelatedField(
        queryset=DrugCategory.objects.all(), source='category', required=False, allow_null=True
    )
    dosage_form = CleanCharField(max_length=100, required=False, allow_blank=True)
    strength = CleanCharField(max_length=100, required=False, allow_blank=True)
    active_ingredient = CleanCharField(required=False, allow_blank=True)
    indications = CleanListField()
    contraindications = CleanListField()
    dosage_adults = CleanCharField(required=False, allow_blank=True)
    dosage_children = CleanCharField(required=False, allow_blank=True)
    stock_quantity = serializers.IntegerField(min_value=0, required=False)
    unit_price = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=0,
                                          required=False, allow_null=True)
    supplier = CleanCharField(max_length=255, required=False, allow_blank=True)
    batch_number = CleanCharField(max_length=100, required=False, allow_blank=True)
    expiry_date = serializers.DateField(required=False, allow_null=True)
    units_per_pack = serializers.IntegerField(min_value=1, required=False)
    unit_type = serializers.ChoiceField(choices=[c for c, _ in Drug.UNIT_TYPE_CHOICES], required=False)
    is_active = serializers.BooleanField(required=False)
    is_prescription_only = serializers.BooleanField(required=False)
    notes = CleanCharField(required=False, allow_blank=True)

    def validate_drug_name(self, v):
        if not v:
            raise serializers.ValidationError('Drug name is required')
        return v


class StockAdjustSerializer(serializers.Serializer):
    change = serializers.IntegerField()


class UsageSerializer(serializers.Serializer):
    quantity = serializers.IntegerField(min_value=1)
    diagnosis_id = serializers.IntegerField(min_value=1, required=False, allow_null=True)
    note = CleanCharField(required=False, allow_blank=True, allow_null=True)
    patient_info = serializers.DictField(required=False, allow_null=True)


class WriteOffSerializer(serializers.Serializer):
    quantity = serializers.IntegerField(min_value=1)
    reason = CleanCharField()
    note = CleanCharField(required=False, allow_blank=True, allow_null=True)


class DispenseItemSerializer(serializers.Serializer):
    drug_id = serializers.IntegerField(min_value=1)
    quantity = serializers.IntegerField(min_value=1)
    notes = CleanCharField(required=False, allow_blank=True)


class DispenseSerializer(serializers.Serializer):
    items = DispenseItemSerializer(many=True, allow_empty=False)
    patient_info = serializers.DictField(required=False, allow_null=True)
    skip_duplicate_check = serializers.BooleanField(default=False)


class DrugImportSerializer(serializers.Serializer):
    # rows are mapped and checked one by one in the service
    drugs = serializers.ListField(child=serializers.DictField(), allow_empty=False, max_length=5000)


class UsageQuerySerializer(serializers.Serializer):
    date_from = serializers.DateField(required=False)
    date_to = serializers.DateField(required=False)
    drug_id = serializers.IntegerField(min_value=1, required=False)
    write_offs = serializers.BooleanField(required=False, allow_null=True, default=None)


class DrugCategorySerializer(serializers.ModelSerializer):
    class Meta:
        model = DrugCategory
        fields = ['id', 'name', 'description']


class DrugSerializer(serializers.ModelSerializer):
    category = DrugCategorySerializer(read_only=True)
    mode = serializers.CharField(source='owner_mode', read_only=True)

    class Meta:
        model = Drug
        exclude = ['owner_user', 'organization', 'created_by', 'updated_by']


class DrugUsageSerializer(serializers.ModelSerializer):
    dispensed_by_email = serializers.EmailField(source='dispensed_by.email', read_only=True, default=None)

    class Meta:
        model = DrugUsage
        fields = [
            'id', 'drug', 'drug_name', 'diagnosis', 'quantity_dispensed', 'dispensed_date',
            'dispensed_by', 'dispensed_by_email', 'patient_info', 'notes',
            'is_write_off', 'write_off_reason', 'write_off_by', 'write_off_date', 'created_at',
        ]
