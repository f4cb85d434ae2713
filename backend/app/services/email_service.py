"""
Service d'envoi d'emails SMTP.
Codes OTP, demandes de signature, relances et notifications d'attestation.
"""

import logging
import smtplib
from datetime import date
from email.mime.image import MIMEImage
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from app.config import settings
from app.services.errors import DeliveryFailure

logger = logging.getLogger(__name__)


def _send(
    to_email: str,
    subject: str,
    text: str,
    html: Optional[str] = None,
    inline_image: Optional[bytes] = None,
) -> None:
    """
    Construit et envoie le message.
    Toute erreur SMTP/réseau est convertie en DeliveryFailure.
    """
    msg = MIMEMultipart("related")
    msg["From"] = settings.SMTP_FROM
    msg["To"] = to_email
    msg["Subject"] = subject

    alternative = MIMEMultipart("alternative")
    alternative.attach(MIMEText(text, "plain", "utf-8"))
    if html:
        alternative.attach(MIMEText(html, "html", "utf-8"))
    msg.attach(alternative)

    # Image inline référencée par cid:qrcode dans le HTML
    if inline_image:
        image = MIMEImage(inline_image, name="qrcode.png")
        image.add_header("Content-ID", "<qrcode>")
        image.add_header("Content-Disposition", "inline", filename="qrcode.png")
        msg.attach(image)

    try:
        with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT) as server:
            if settings.SMTP_USE_TLS:
                server.starttls()
            if settings.SMTP_USERNAME:
                server.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
            server.send_message(msg)
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Échec SMTP vers %s (%s) : %s", to_email, subject, exc)
        raise DeliveryFailure(f"Impossible d'envoyer l'email à {to_email}.") from exc

    logger.info("Email envoyé à %s : %s", to_email, subject)


def send_signature_otp_email(to_email: str, code: str, ttl_minutes: int) -> None:
    """Code de sécurité pour signer une convention."""
    _send(
        to_email,
        "Code de signature OTP - Convention PFMP",
        f"Bonjour,\n\nVoici votre code de sécurité pour signer la convention : {code}\n\n"
        f"Ce code est valable {ttl_minutes} minutes.\n\nCordialement.",
    )


def send_activation_otp_email(to_email: str, code: str, ttl_minutes: int) -> None:
    """Code d'activation de compte (avant connexion)."""
    _send(
        to_email,
        "Code d'activation - PFMP",
        f"Bonjour,\n\nVoici votre code d'activation pour finaliser votre inscription : {code}\n\n"
        f"Ce code est valable {ttl_minutes} minutes.\n\nL'équipe PFMP",
    )


def send_signature_request_email(
    to_email: str,
    role_label: str,
    student_name: str,
    school_name: Optional[str],
) -> None:
    """Prévient le signataire suivant que la convention l'attend."""
    _send(
        to_email,
        f"Convention PFMP à signer - {student_name}",
        f"Bonjour,\n\nLa convention de stage de {student_name}"
        f"{f' ({school_name})' if school_name else ''} est en attente de votre signature "
        f"en tant que {role_label}.\n\nTableau de bord : {settings.APP_BASE_URL}/\n\nCordialement.",
    )


def send_reminder_email(
    to_email: str,
    student_name: str,
    school_name: Optional[str],
    class_name: Optional[str],
    start: date,
    end: Optional[date],
    tutor_name: Optional[str],
    teacher_name: Optional[str],
) -> None:
    """Relance polie d'un signataire en attente."""
    end_label = end.strftime("%d/%m/%Y") if end else "?"
    _send(
        to_email,
        f"Rappel : Convention en attente - {student_name} - {school_name or ''}".rstrip(" -"),
        "Respectueusement,\n\n"
        f"Au nom de l'établissement {school_name or ''}, nous nous permettons de vous solliciter "
        "concernant la signature de la convention de stage, actuellement en attente.\n\n"
        "Détails :\n"
        f"- Élève : {student_name}\n"
        f"- Classe : {class_name or ''}\n"
        f"- Période : Du {start.strftime('%d/%m/%Y')} au {end_label}\n"
        f"- Tuteur : {tutor_name or ''}\n"
        f"- Enseignant Référent : {teacher_name or ''}\n\n"
        f"Merci de bien vouloir signer ce document en suivant ce lien : {settings.APP_BASE_URL}/\n\n"
        "En vous remerciant par avance,\nL'équipe PFMP",
    )


def send_attestation_signed_email(
    to_email: str,
    student_name: str,
    verification_url: str,
    qr_image_bytes: bytes,
) -> None:
    """Informe l'enseignant que l'attestation est signée, avec le QR code de vérification."""
    html_content = f"""
    <html>
      <body style="font-family: Arial, sans-serif; color: #333; max-width: 600px; margin: auto;">
        <h2 style="color: #15803d;">Attestation de stage signée</h2>
        <p>Bonjour,</p>
        <p>
          L'attestation de stage de <strong>{student_name}</strong> a été validée et signée par l'entreprise.
        </p>
        <div style="text-align: center; margin: 24px 0;">
          <img src="cid:qrcode" alt="QR Code de vérification" style="width: 180px; height: 180px;" />
        </div>
        <p style="font-size: 12px;"><a href="{verification_url}">Vérifier l'authenticité du document</a></p>
      </body>
    </html>
    """
    _send(
        to_email,
        f"Attestation de stage signée - {student_name}",
        f"Bonjour,\n\nL'attestation de stage pour {student_name} a été validée et signée par "
        f"l'entreprise.\n\nVérification : {verification_url}\n\nCordialement.",
        html=html_content,
        inline_image=qr_image_bytes,
    )
