# messages.py
from constants import MESSAGE_CONSTANTS

_REPLACEMENT_CHAR = "\ufffd"

def first_name(full_name: str) -> str:
    parts = (full_name or "").split()
    return parts[0] if parts else ""

def format_script(template: str, patient_name: str, clinic_name: str) -> str:
    """
    Fills a stage template for manual delivery over WhatsApp.
    Placeholders: #NomePaciente / [Nome] and #NomeClinica / [NomeClinica].
    """
    if not template:
        return ""

    text = template
    for token in MESSAGE_CONSTANTS.PATIENT_TOKENS:
        text = text.replace(token, patient_name)
    for token in MESSAGE_CONSTANTS.CLINIC_TOKENS:
        text = text.replace(token, clinic_name)

    # Markdown **bold** -> WhatsApp *bold*
    text = text.replace("**", "*")
    text = text.replace(_REPLACEMENT_CHAR, "")
    return text.strip()

def survey_invitation(patient_name: str) -> str:
    return MESSAGE_CONSTANTS.SURVEY_INVITATION.format(first_name=first_name(patient_name))
