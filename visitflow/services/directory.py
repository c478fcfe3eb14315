from typing import Any, Dict, Optional
import logging

import httpx
from pydantic import BaseModel

from ..core.exceptions import ServiceUnavailableError
from ..core.security import UserRole

logger = logging.getLogger(__name__)

class DoctorInfo(BaseModel):
    id: str
    role: str
    active: bool = True
    full_name: Optional[str] = None
    department: Optional[str] = None
    
    @property
    def is_active_doctor(self) -> bool:
        return self.active and self.role.lower() == UserRole.DOCTOR.value

class PatientInfo(BaseModel):
    id: str
    full_name: Optional[str] = None

class DirectoryClient:
    """Read-only client for the staff and patient directory service."""
    
    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        client: Optional[httpx.Client] = None
    ):
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)
    
    def get_doctor(self, doctor_id: str) -> Optional[DoctorInfo]:
        data = self._fetch(f"/doctors/{doctor_id}")
        return DoctorInfo(**data) if data is not None else None
    
    def get_patient(self, patient_id: str) -> Optional[PatientInfo]:
        data = self._fetch(f"/patients/{patient_id}")
        return PatientInfo(**data) if data is not None else None
    
    def close(self) -> None:
        self._client.close()
    
    def _fetch(self, path: str) -> Optional[Dict[str, Any]]:
        try:
            response = self._client.get(path)
        except httpx.HTTPError as exc:
            logger.error(f"Directory request {path} failed: {str(exc)}")
            raise ServiceUnavailableError(path=path) from exc
        
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            logger.error(f"Directory request {path} returned {response.status_code}")
            raise ServiceUnavailableError(path=path, status=response.status_code)
        
        return response.json()
