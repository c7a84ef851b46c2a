"""Request bodies. Field names follow the portal's camelCase JSON."""

from __future__ import annotations

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class TelemetrySubmission(_CamelModel):
    # Loosely typed so the route can answer 400 with a specific message.
    device_id: Any = Field(default=None, alias="deviceId")
    readings: Any = None


class DeviceIngestPayload(_CamelModel):
    serial_number: Optional[str] = Field(default=None, alias="serialNumber")
    serial: Optional[str] = None
    data: Optional[dict[str, Any]] = None
    raw_text: Optional[str] = Field(default=None, alias="rawText")
    source: str = "http"

    @property
    def device_serial(self) -> Optional[str]:
        return (self.serial_number or self.serial or "").strip() or None


class AlertRuleCreate(_CamelModel):
    device_type_id: Union[int, str] = Field(..., alias="deviceTypeId")
    variable_code: str = Field(..., alias="variableCode", min_length=1, max_length=32)
    rule_name: str = Field(..., alias="name", min_length=1, max_length=100)
    operator: str
    threshold_1: Optional[float] = Field(default=None, alias="threshold1")
    threshold_2: Optional[float] = Field(default=None, alias="threshold2")
    severity: str = "warning"
    message_template: Optional[str] = Field(default=None, alias="messageTemplate", max_length=500)
    is_active: bool = Field(default=True, alias="isActive")


class AlertRuleUpdate(_CamelModel):
    variable_code: Optional[str] = Field(default=None, alias="variableCode", min_length=1, max_length=32)
    rule_name: Optional[str] = Field(default=None, alias="name", min_length=1, max_length=100)
    operator: Optional[str] = None
    threshold_1: Optional[float] = Field(default=None, alias="threshold1")
    threshold_2: Optional[float] = Field(default=None, alias="threshold2")
    severity: Optional[str] = None
    message_template: Optional[str] = Field(default=None, alias="messageTemplate", max_length=500)
    is_active: Optional[bool] = Field(default=None, alias="isActive")


class AlertStatusUpdate(_CamelModel):
    status: str


class ApiAlertStatusUpdate(_CamelModel):
    alert_id: Union[int, str] = Field(..., alias="alertId")
    status: str


class AdminAlertRuleCreate(AlertRuleCreate):
    # None creates a global rule.
    tenant_id: Optional[Union[int, str]] = Field(default=None, alias="tenantId")


class AlertRuleBulkDelete(_CamelModel):
    ids: list[Union[int, str]] = Field(..., min_length=1)
