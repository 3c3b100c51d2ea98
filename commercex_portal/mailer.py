"""SMTP delivery for transactional and marketing mail."""
import logging
import os
import smtplib
import socket
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

logger = logging.getLogger(__name__)

NOT_CONFIGURED = 'SMTP not configured. Go to Settings → Email.'


class Mailer:
    def __init__(self, host, port=587, user=None, password=None, from_email=None,
                 from_name=None, encryption='tls', timeout=20):
        self.host = host
        self.port = int(port or 587)
        self.user = user
        self.password = password
        self.from_email = from_email or user
        self.from_name = from_name or 'Store'
        self.encryption = encryption or 'tls'
        self.timeout = timeout

    @classmethod
    def from_settings(cls, config):
        """Build from an `smtp_config` style settings document."""
        config = config or {}
        return cls(
            host=config.get('host'),
            port=config.get('port') or 587,
            user=config.get('user'),
            password=config.get('password'),
            from_email=config.get('from_email'),
            from_name=config.get('from_name'),
            encryption=config.get('encryption'),
        )

    @classmethod
    def from_env(cls):
        user = os.getenv('SMTP_USER')
        return cls(
            host=os.getenv('SMTP_HOST'),
            port=os.getenv('SMTP_PORT', '587'),
            user=user,
            password=os.getenv('SMTP_PASS'),
            from_email=os.getenv('SMTP_SENDER', user or 'no-reply@commercex.local'),
            from_name=os.getenv('SMTP_FROM_NAME', 'CommerceX'),
        )

    @property
    def configured(self):
        return bool(self.host and self.user and self.password)

    @property
    def implicit_tls(self):
        return self.port == 465 or self.encryption == 'ssl'

    def build_message(self, recipient, subject, body, subtype='html'):
        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = f'{self.from_name} <{self.from_email}>'
        msg['To'] = recipient
        msg.attach(MIMEText(body, subtype, 'utf-8'))
        return msg

    def _connect(self):
        if self.implicit_tls:
            return smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        server.ehlo()
        if server.has_extn('starttls'):
            server.starttls()
            server.ehlo()
        return server

    def send(self, recipient, subject, body, subtype='html'):
        """Send one message. Returns `(sent, reason)`."""
        if not self.configured:
            return False, NOT_CONFIGURED
        if not recipient:
            return False, 'No recipient'

        msg = self.build_message(recipient, subject, body, subtype)
        try:
            with self._connect() as server:
                server.login(self.user, self.password)
                server.sendmail(self.from_email, [recipient], msg.as_string())
        except ConnectionRefusedError:
            return False, f'Connection refused on port {self.port}. Check host and port.'
        except socket.gaierror:
            return False, f'Cannot resolve hostname "{self.host}". Check SMTP host.'
        except smtplib.SMTPAuthenticationError as e:
            return False, f'Authentication failed. Check username/password. Server: {_smtp_text(e)}'
        except smtplib.SMTPRecipientsRefused:
            return False, f'Recipient rejected: {recipient}'
        except smtplib.SMTPSenderRefused as e:
            return False, f'MAIL FROM rejected: {_smtp_text(e)}'
        except (smtplib.SMTPException, OSError) as e:
            logger.error('SMTP error sending to %s: %s', recipient, e)
            return False, f'SMTP error: {e}'
        return True, 'Email sent'


def _smtp_text(error):
    text = getattr(error, 'smtp_error', b'')
    if isinstance(text, bytes):
        text = text.decode('utf-8', 'replace')
    return text or str(error)
