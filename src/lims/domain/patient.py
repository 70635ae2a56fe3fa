from dataclasses import dataclass
from typing import Optional


@dataclass(unsafe_hash=True)
class Patient:
    """Patient as far as orders need it. Maintained by the registration service."""
    patient_id: str
    family_name: str
    given_name: str
    birthdate: Optional[str] = None  # 'YYYY-MM-DD'
    gender: Optional[str] = None
