from fieldconfig.models.field_configuration import FieldConfiguration

__all__ = [
    "FieldConfiguration",
]
