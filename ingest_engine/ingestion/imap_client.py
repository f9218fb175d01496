"""
IMAP message store used as the source of attachment-based rules.
"""

import os
import imaplib
import email
import logging
from datetime import datetime
from email.header import decode_header
from email.utils import parsedate_to_datetime
from typing import List, Optional, Protocol, Tuple

import pytz
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from ingest_engine.errors import TransientIOError

load_dotenv()

logger = logging.getLogger(__name__)

IMAP_SEARCH_KEYS = {
    'ALL', 'ANSWERED', 'BCC', 'BEFORE', 'BODY', 'CC', 'DELETED', 'FLAGGED', 'FROM',
    'HEADER', 'KEYWORD', 'LARGER', 'NEW', 'NOT', 'OLD', 'ON', 'OR', 'RECENT', 'SEEN',
    'SENTBEFORE', 'SENTON', 'SENTSINCE', 'SINCE', 'SMALLER', 'SUBJECT', 'TEXT', 'TO',
    'UID', 'UNANSWERED', 'UNDELETED', 'UNFLAGGED', 'UNKEYWORD', 'UNSEEN', 'X-GM-RAW',
}


class Attachment(BaseModel):
    model_config = ConfigDict(frozen=True)

    filename: str
    content: bytes
    content_type: str = 'application/octet-stream'


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    message_id: str = ''
    subject: str = ''
    from_email: str = ''
    received_at: Optional[datetime] = None
    attachments: Tuple[Attachment, ...] = Field(default_factory=tuple)


class MessageStore(Protocol):
    """Searches a mailbox and returns messages newest-first."""

    def search(self, query: str, limit: int = 50) -> List[Message]:
        ...


class IMAPMessageStore:
    """IMAP client returning messages with their attachments."""

    def __init__(self):
        self.imap_server = os.getenv('IMAP_SERVER')
        self.imap_port = int(os.getenv('IMAP_PORT', '993'))
        self.imap_username = os.getenv('IMAP_USERNAME')
        self.imap_password = os.getenv('IMAP_PASSWORD')
        self.imap_use_ssl = os.getenv('IMAP_USE_SSL', 'true').lower() == 'true'
        self.gmail_raw_search = os.getenv('IMAP_GMAIL_RAW', 'false').lower() == 'true'

        self.inbox = os.getenv('IMAP_INBOX', 'INBOX')

        if not all([self.imap_server, self.imap_username, self.imap_password]):
            raise ValueError("IMAP_SERVER, IMAP_USERNAME, and IMAP_PASSWORD are required")

        self.connection: Optional[imaplib.IMAP4] = None

    def connect(self) -> None:
        """Connect to the IMAP server."""
        try:
            if self.imap_use_ssl:
                self.connection = imaplib.IMAP4_SSL(self.imap_server, self.imap_port)
            else:
                self.connection = imaplib.IMAP4(self.imap_server, self.imap_port)

            self.connection.login(self.imap_username, self.imap_password)
            logger.info(f"Connected to IMAP server: {self.imap_server}")

        except imaplib.IMAP4.abort as e:
            raise TransientIOError(f"IMAP connection aborted: {e}") from e
        except Exception as e:
            logger.error(f"Failed to connect to IMAP server: {e}")
            raise

    def disconnect(self) -> None:
        """Disconnect from the IMAP server."""
        if self.connection:
            try:
                self.connection.logout()
                logger.info("Disconnected from IMAP server")
            except Exception as e:
                logger.error(f"Error disconnecting from IMAP server: {e}")
            finally:
                self.connection = None

    def build_criteria(self, query: str) -> str:
        """Pass IMAP criteria through; wrap free text as a TEXT or X-GM-RAW search."""
        query = query.strip()
        if not query:
            return 'ALL'
        if query.startswith('(') or query.split()[0].upper() in IMAP_SEARCH_KEYS:
            return query

        escaped = query.replace('\\', '\\\\').replace('"', '\\"')
        if self.gmail_raw_search:
            return f'X-GM-RAW "{escaped}"'
        return f'TEXT "{escaped}"'

    def search(self, query: str, limit: int = 50) -> List[Message]:
        """Search the inbox and return up to ``limit`` messages, newest first."""
        if not self.connection:
            self.connect()

        try:
            self.connection.select(self.inbox, readonly=True)
            status, data = self.connection.search(None, self.build_criteria(query))

            if status != 'OK':
                raise TransientIOError(f"IMAP search failed with status {status}")

            message_ids = data[0].split() if data and data[0] else []
            # sequence numbers grow with arrival, so the tail is the newest
            message_ids = message_ids[-limit:]
            logger.info(f"IMAP search '{query}' matched {len(message_ids)} messages")

            messages = [self._fetch_message(message_id) for message_id in message_ids]
            messages.reverse()
            messages.sort(key=self._sort_key, reverse=True)
            return messages

        except imaplib.IMAP4.abort as e:
            self.connection = None
            raise TransientIOError(f"IMAP connection aborted: {e}") from e

    @staticmethod
    def _sort_key(message: Message) -> datetime:
        return message.received_at or datetime.min.replace(tzinfo=pytz.UTC)

    def _fetch_message(self, message_id: bytes) -> Message:
        status, msg_data = self.connection.fetch(message_id, '(BODY.PEEK[])')

        if status != 'OK':
            raise TransientIOError(f"Failed to fetch message {message_id}")

        email_message = email.message_from_bytes(msg_data[0][1])

        attachments = []
        for part in email_message.walk():
            if part.get_content_disposition() == 'attachment':
                filename = part.get_filename()
                if filename:
                    attachments.append(Attachment(
                        filename=self._decode_header(filename),
                        content=part.get_payload(decode=True) or b'',
                        content_type=part.get_content_type(),
                    ))

        return Message(
            message_id=email_message.get('Message-ID', ''),
            subject=self._decode_header(email_message.get('Subject', '')),
            from_email=email_message.get('From', ''),
            received_at=self._parse_date(email_message.get('Date', '')),
            attachments=tuple(attachments),
        )

    def _parse_date(self, date_string: str) -> Optional[datetime]:
        if not date_string:
            return None
        try:
            parsed = parsedate_to_datetime(date_string)
        except (TypeError, ValueError):
            logger.warning(f"Could not parse email date: {date_string}")
            return None
        if parsed.tzinfo is None:
            parsed = pytz.UTC.localize(parsed)
        return parsed

    def _decode_header(self, header: str) -> str:
        """Decode email header to handle encoding."""
        if not header:
            return ""

        decoded_parts = decode_header(header)
        decoded_string = ""

        for part, encoding in decoded_parts:
            if isinstance(part, bytes):
                if encoding:
                    try:
                        decoded_string += part.decode(encoding)
                    except (UnicodeDecodeError, LookupError):
                        decoded_string += part.decode('utf-8', errors='ignore')
                else:
                    decoded_string += part.decode('utf-8', errors='ignore')
            else:
                decoded_string += part

        return decoded_string
