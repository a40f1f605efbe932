class AuditError(Exception):
    pass


class AuditNotFound(AuditError):
    def __init__(self, audit_id: str):
        super().__init__(f"Audit not found: {audit_id}")
        self.audit_id = audit_id


class TransportError(AuditError):
    def __init__(self, url: str, reason: str):
        super().__init__(f"Failed to fetch {url}: {reason}")
        self.url = url
        self.reason = reason


class RuleEvaluationError(AuditError):
    def __init__(self, check_name: str, url: str):
        super().__init__(f"Check {check_name} failed on {url}")
        self.check_name = check_name
        self.url = url


class NoPagesCrawled(AuditError):
    pass


class PersistenceError(AuditError):
    pass


class SummaryGenerationError(AuditError):
    pass
