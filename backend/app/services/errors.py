"""
Taxonomie des erreurs métier.

Toutes héritent de ValueError : les routers existants qui traduisent
`except ValueError` en réponse HTTP continuent de fonctionner, les routers
qui ont besoin d'un code précis interceptent la sous-classe.
"""


class ServiceError(ValueError):
    """Erreur métier présentable à l'utilisateur final."""


class ValidationError(ServiceError):
    """Entrée malformée (email, longueur de code...)."""


class NotFound(ServiceError):
    """Ressource introuvable."""


class InvalidCode(ServiceError):
    """Aucun code OTP ne correspond (ou déjà consommé)."""

    def __init__(self, message: str = "Code invalide"):
        super().__init__(message)


class CodeExpired(ServiceError):
    """Tous les codes correspondants ont expiré."""

    def __init__(self, message: str = "Code expiré"):
        super().__init__(message)


class RateLimited(ServiceError):
    """Trop de tentatives pour ce couple (action, IP)."""


class StaleState(ServiceError):
    """La convention a changé de statut entre la lecture et l'écriture."""


class DeliveryFailure(ServiceError):
    """Échec de l'envoi d'une notification sortante."""


class IntegrityFailure(ServiceError):
    """Signature HMAC invalide sur un lien de vérification."""


class CorruptedInput(ServiceError):
    """Charge utile de vérification illisible (base64/JSON)."""


class ReminderCooldown(ServiceError):
    """Relance refusée : délai minimal non écoulé."""
