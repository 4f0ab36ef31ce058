"""Error taxonomy for the case workflow and credential issuance core.

Every failure a caller can act on is a subclass of CredentialServiceError
with a stable ``code``.  The calling layer (HTTP handlers, CLI, worker)
maps codes to user-facing messages; nothing in the core formats messages
for end users.

  InvalidTransition   operation attempted from an ineligible status
  NotFound            unknown case or credential id
  Conflict            lost a conditional-update race, or a uniqueness
                      violation (credential number, assigned number)
  AlreadyHasActiveCredential
                      Conflict: the subject already holds an ACTIVE
                      credential of that type
  DuplicateCredentialNumber / DuplicateAssignedNumber
                      Conflict: number already taken within its type
  AlreadyIssued      re-issuance attempted on an already-credentialed case
  SubmissionInvalid   case submission failed the submission contract
  RegistryUnavailable storage timeout / connection loss (retryable)
  SigningKeyUnavailable
                      fatal configuration error; no issuance or
                      verification may run without a key

Verification outcomes (TAMPERED, EXPIRED, REVOKED, ...) are NOT errors.
They are classifications returned by the Verifier.
"""

from __future__ import annotations

from uuid import UUID


class CredentialServiceError(Exception):
    code = "credential_service_error"


class InvalidTransition(CredentialServiceError):
    code = "invalid_transition"

    def __init__(self, case_id: UUID, status: str, operation: str) -> None:
        super().__init__(f"cannot {operation} case {case_id} in status {status}")
        self.case_id = case_id
        self.status = status
        self.operation = operation


class NotFound(CredentialServiceError):
    code = "not_found"

    def __init__(self, kind: str, ident: object) -> None:
        super().__init__(f"{kind} {ident} not found")
        self.kind = kind
        self.ident = ident


class Conflict(CredentialServiceError):
    code = "conflict"
    retryable = True


class AlreadyHasActiveCredential(Conflict):
    code = "already_has_active_credential"
    retryable = False

    def __init__(self, subject_id: str, credential_type: str) -> None:
        super().__init__(
            f"subject {subject_id} already holds an active {credential_type} credential"
        )
        self.subject_id = subject_id
        self.credential_type = credential_type


class AlreadyIssued(CredentialServiceError):
    code = "already_issued"

    def __init__(self, case_id: UUID, credential_id: UUID) -> None:
        super().__init__(f"case {case_id} already has credential {credential_id}")
        self.case_id = case_id
        self.credential_id = credential_id


class SubmissionInvalid(CredentialServiceError, ValueError):
    code = "submission_invalid"


class RegistryUnavailable(CredentialServiceError):
    code = "registry_unavailable"
    retryable = True


class SigningKeyUnavailable(CredentialServiceError):
    code = "signing_key_unavailable"


class DuplicateCredentialNumber(Conflict):
    code = "duplicate_credential_number"

    def __init__(self, credential_type: str, credential_number: str) -> None:
        super().__init__(f"{credential_type} number {credential_number} already issued")
        self.credential_type = credential_type
        self.credential_number = credential_number


class DuplicateAssignedNumber(Conflict):
    code = "duplicate_assigned_number"
    retryable = False

    def __init__(self, case_type: str, assigned_number: str) -> None:
        super().__init__(
            f"{case_type} number {assigned_number} is already assigned to another case"
        )
        self.case_type = case_type
        self.assigned_number = assigned_number
