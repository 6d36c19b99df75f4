"""Billing error taxonomy.

Each error carries the HTTP status the API layer answers with and a
user-facing message. Full detail stays in the server logs.
"""
from typing import Optional


class BillingError(Exception):
    """Base class for all subscription/payment lifecycle errors."""
    status_code = 500
    retryable = False
    default_message = "Erro ao processar assinatura"

    def __init__(self, message: Optional[str] = None, *, detail: Optional[str] = None):
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)


class InvalidRoleError(BillingError):
    """Administrator or unrecognized role asked for billing."""
    status_code = 400
    default_message = "Tipo de usuário inválido para assinatura"


class InvalidNotificationError(BillingError):
    """Webhook body cannot be correlated to any gateway resource."""
    status_code = 400
    default_message = "Notificação inválida"


class SubscriberNotFoundError(BillingError):
    status_code = 404
    default_message = "Usuário não encontrado"


class SubscriptionNotFoundError(BillingError):
    """No subscription record carries the notified gateway subscription id."""
    status_code = 404
    default_message = "Assinatura não encontrada"


class AlreadySubscribedError(BillingError):
    status_code = 409
    default_message = "Usuário já possui período de teste ou assinatura ativa"


class GatewayRejectedError(BillingError):
    """The processor refused the request; retrying needs new input."""
    status_code = 422
    default_message = "Pagamento recusado pelo Mercado Pago"

    def __init__(self, message: Optional[str] = None, *, detail: Optional[str] = None, gateway_status: Optional[int] = None):
        super().__init__(message, detail=detail)
        self.gateway_status = gateway_status


class GatewayUnavailableError(BillingError):
    """Network failure, timeout or processor-side error. Safe to retry."""
    status_code = 503
    retryable = True
    default_message = "Mercado Pago indisponível, tente novamente"


class RecordStoreError(BillingError):
    status_code = 503
    retryable = True
    default_message = "Falha ao acessar os dados de assinatura"
