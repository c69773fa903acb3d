from dentalcore.repositories.base import EntityDescriptor
from dentalcore.repositories.base import EntityRepository
from dentalcore.repositories.patient import PatientRepository

__all__ = [
    "EntityDescriptor",
    "EntityRepository",
    "PatientRepository",
]
