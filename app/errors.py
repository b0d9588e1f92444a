"""
Error taxonomy for the fiscal document pipeline.

Every rejection carries a stable ``code`` (used by API clients to branch),
an HTTP ``status_code`` and a specific, human readable ``message``.
Reviewable conditions (unmatched supplier or items) are not errors and are
reported by the reconciliation report instead.
"""


class FiscalError(Exception):
    """Base class for all errors raised by the NFe pipeline."""
    code = 'FISCAL_ERROR'
    status_code = 400

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = list(details or [])

    def to_dict(self):
        payload = {'error': self.code, 'message': self.message}
        if self.details:
            payload['details'] = self.details
        return payload


# Input-shape errors: rejected before any persistence

class MalformedKeyError(FiscalError):
    code = 'MALFORMED_KEY'


class MalformedXmlError(FiscalError):
    code = 'MALFORMED_XML'
    status_code = 422


class InvalidDocumentError(FiscalError):
    code = 'INVALID_DOCUMENT'
    status_code = 422


class ReasonRequiredError(FiscalError):
    code = 'REASON_REQUIRED'


class JustificationRequiredError(FiscalError):
    code = 'JUSTIFICATION_REQUIRED'


# Conflict errors: current state is surfaced to the caller

class DuplicateDocumentError(FiscalError):
    code = 'DUPLICATE_DOCUMENT'
    status_code = 409

    def __init__(self, existing):
        super().__init__(
            f'document already imported as #{existing.id} '
            f'(NF {existing.document_number}, status {existing.status})'
        )
        self.existing_id = existing.id
        self.access_key = existing.access_key

    def to_dict(self):
        payload = super().to_dict()
        payload['existing_id'] = self.existing_id
        payload['access_key'] = self.access_key
        return payload


class InvalidTransitionError(FiscalError):
    code = 'INVALID_TRANSITION'
    status_code = 409

    def __init__(self, current, target):
        super().__init__(f'cannot move from {current} to {target}')
        self.current = current
        self.target = target

    def to_dict(self):
        payload = super().to_dict()
        payload['current_status'] = self.current
        return payload


class AlreadyTerminalError(InvalidTransitionError):
    code = 'ALREADY_TERMINAL'

    def __init__(self, current, target):
        super().__init__(current, target)
        self.message = f'manifestation already terminal ({current}); {target} not accepted'
        self.args = (self.message,)


class UnlinkedItemsError(FiscalError):
    """Raised by callers whose policy requires every item linked."""
    code = 'UNLINKED_ITEMS'
    status_code = 409


class CursorConflictError(FiscalError):
    code = 'CURSOR_CONFLICT'
    status_code = 409


class NotFoundError(FiscalError):
    code = 'NOT_FOUND'
    status_code = 404


# External service errors: surfaced verbatim, never retried here

class ExternalServiceError(FiscalError):
    code = 'EXTERNAL_SERVICE_ERROR'
    status_code = 502

    def __init__(self, message, status_code=None, service_status=None):
        super().__init__(message)
        self.service_status = service_status
        self.upstream_status = status_code

    def to_dict(self):
        payload = super().to_dict()
        if self.service_status:
            payload['service_status'] = self.service_status
        return payload
