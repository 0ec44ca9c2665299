"""SQLAlchemy models for CodeLink."""

from codelink.models.codes import DiagnosisCode, ProcedureCode

__all__ = [
    "DiagnosisCode",
    "ProcedureCode",
]
