"""
Base schemas with standardized field types for consistent API responses.
"""
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic_core import core_schema


class StandardizedModel(BaseModel):
    """Response base that reads ORM rows and emits enum values."""

    model_config = ConfigDict(use_enum_values=True, populate_by_name=True, from_attributes=True)


class Money(Decimal):
    """Rupee amount: accepted as int, float, str or Decimal, kept to paisa, sent as float."""

    @classmethod
    def __get_pydantic_core_schema__(cls, source_type: Any, handler: Any) -> core_schema.CoreSchema:
        def validate_money(value: Any) -> Decimal:
            try:
                amount = Decimal(str(value)) if not isinstance(value, Decimal) else value
            except InvalidOperation as exc:
                raise ValueError(f"Cannot convert {value!r} to Money") from exc
            if not amount.is_finite():
                raise ValueError("Amount must be a finite number")
            return amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

        return core_schema.no_info_after_validator_function(
            validate_money,
            core_schema.union_schema(
                [
                    core_schema.int_schema(),
                    core_schema.float_schema(),
                    core_schema.str_schema(),
                    core_schema.is_instance_schema(Decimal),
                ]
            ),
            serialization=core_schema.plain_serializer_function_ser_schema(
                float,
                info_arg=False,
                return_schema=core_schema.float_schema(),
            ),
        )
