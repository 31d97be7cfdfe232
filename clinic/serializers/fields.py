import bleach
from rest_framework import serializers


def clean_text(value) -> str:
    return bleach.clean((value or '').strip(), tags=[], strip=True)


class CleanCharField(serializers.CharField):
    """CharField that strips markup from the incoming value."""

    def to_internal_value(self, data):
        return clean_text(super().to_internal_value(data))


class CleanListField(serializers.ListField):
    """List of short strings; a comma or newline separated string is accepted too."""

    def __init__(self, **kwargs):
        kwargs.setdefault('child', CleanCharField(max_length=500, allow_blank=True))
        kwargs.setdefault('required', False)
        super().__init__(**kwargs)

    def to_internal_value(self, data):
        if isinstance(data, str):
            data = [part for part in data.replace('\n', ',').split(',')]
        return [item for item in super().to_internal_value(data) if item]
