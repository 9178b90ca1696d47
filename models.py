from pydantic import BaseModel
from typing import Optional, List

class VerifyRequest(BaseModel):
    key: Optional[str] = None
    deviceId: Optional[str] = None

class VerifyResponse(BaseModel):
    status: str
    expiresAt: Optional[int] = None

class AddKeyRequest(BaseModel):
    key: Optional[str] = None
    type: Optional[str] = None

class RevokeKeyRequest(BaseModel):
    key: Optional[str] = None

class AdminActionResponse(BaseModel):
    status: str
    key: Optional[str] = None
    error: Optional[str] = None

class KeyRecordResponse(BaseModel):
    key: str
    type: str
    activatedAt: Optional[int] = None
    expiresAt: Optional[int] = None
    deviceId: Optional[str] = None
    active: bool = False

class HealthCheckResponse(BaseModel):
    status: str
    service: str
    version: str
    backend: str
    licenseTypes: List[str]
