"""Static mapping between kanban columns and IMAP folders."""

from mailkan.exceptions import ValidationError

INBOX = "INBOX"

COLUMN_TO_FOLDER: dict[str, str] = {
    "posteingang": INBOX,
    "in-bearbeitung": "In_Bearbeitung",
    "warte-auf-antwort": "Warte_auf_Antwort",
}

FOLDER_TO_COLUMN: dict[str, str] = {folder: column for column, folder in COLUMN_TO_FOLDER.items()}

COLUMNS: tuple[str, ...] = tuple(COLUMN_TO_FOLDER)


def folder_for(column: str) -> str:
    """Return the IMAP folder backing ``column``."""
    try:
        return COLUMN_TO_FOLDER[column]
    except KeyError:
        raise ValidationError(
            f"Invalid column: {column}. Valid columns: {', '.join(COLUMNS)}",
            user_message=f"Unbekannte Spalte: {column}",
        ) from None


def column_for(folder: str) -> str:
    """Return the column shown for ``folder`` (case-insensitive for INBOX)."""
    if folder.upper() == INBOX:
        return FOLDER_TO_COLUMN[INBOX]
    try:
        return FOLDER_TO_COLUMN[folder]
    except KeyError:
        raise ValidationError(
            f"Folder {folder} is not mapped to a column",
            user_message=f"Unbekannter Ordner: {folder}",
        ) from None


def managed_folders() -> list[str]:
    """Folders Mailkan creates on startup (everything except INBOX)."""
    return [folder for folder in COLUMN_TO_FOLDER.values() if folder != INBOX]
