"""
Email notifications for database alerts and reports.

Delivery is best-effort: every failure is logged and reported through the
boolean return value, never raised, so a broken mail server cannot stall the
monitoring loop.
"""

import html
import json
import logging
import smtplib
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, List, Optional

from .config import EmailConfig

logger = logging.getLogger(__name__)


class MessageFormatter:
    """Builds the HTML bodies for alert and report emails."""

    def __init__(self, database: str, host: str):
        self.database = database
        self.host = host

    @staticmethod
    def _pretty(payload: Any) -> str:
        return html.escape(json.dumps(payload, indent=2, default=str))

    def format_alert(self, title: str, details: Any, sent_at: Optional[datetime] = None) -> str:
        sent_at = sent_at or datetime.now(timezone.utc)
        return f"""
            <h2>Database Alert: {html.escape(title)}</h2>
            <p><strong>Database:</strong> {html.escape(self.database)}</p>
            <p><strong>Host:</strong> {html.escape(self.host)}</p>
            <p><strong>Time:</strong> {sent_at.isoformat()}</p>
            <h3>Details:</h3>
            <pre>{self._pretty(details)}</pre>
        """

    def format_daily_report(self, report: Dict[str, Any], report_date: str) -> str:
        summary = report.get('summary', {})
        return f"""
            <h2>Daily Database Performance Report</h2>
            <p><strong>Database:</strong> {html.escape(self.database)}</p>
            <p><strong>Date:</strong> {report_date}</p>
            <h3>Summary:</h3>
            <ul>
              <li>Average Connections: {summary.get('avg_connections', 0)}</li>
              <li>Total Queries: {summary.get('total_queries', 0)}</li>
              <li>Slow Queries: {summary.get('slow_queries', 0)}</li>
              <li>Database Size: {summary.get('database_size', 0)}</li>
            </ul>
            <h3>Full Report:</h3>
            <pre>{self._pretty(report)}</pre>
        """


class EmailNotifier:
    """SMTP email channel for alerts and daily reports."""

    def __init__(self, config: EmailConfig, database: str = "", host: str = ""):
        self.config = config
        self.formatter = MessageFormatter(database, host)
        self.logger = logging.getLogger(__name__ + '.EmailNotifier')

    def send_alert(self, title: str, details: Any) -> bool:
        """Send an alert email to the alert recipients."""
        self.logger.warning(f"ALERT: {title} {json.dumps(details, default=str)}")
        body = self.formatter.format_alert(title, details)
        return self._send(f"Database Alert: {title}", body, self.config.alert_addresses)

    def send_daily_report(self, report: Dict[str, Any]) -> bool:
        """Send the daily performance report to the report recipients."""
        report_date = datetime.now(timezone.utc).date().isoformat()
        body = self.formatter.format_daily_report(report, report_date)
        return self._send(f"Daily Database Report - {report_date}", body, self.config.report_addresses)

    def _send(self, subject: str, html_body: str, recipients: List[str]) -> bool:
        if not self.config.enabled:
            self.logger.info(f"Email notifications disabled, not sending '{subject}'")
            return False
        if not recipients:
            self.logger.warning(f"No recipients configured for '{subject}'")
            return False

        try:
            msg = MIMEMultipart('alternative')
            msg['Subject'] = subject
            msg['From'] = self.config.from_address or self.config.username
            msg['To'] = ', '.join(recipients)
            msg.attach(MIMEText(html_body, 'html'))

            with smtplib.SMTP(self.config.smtp_server, self.config.smtp_port,
                              timeout=self.config.timeout_seconds) as server:
                if self.config.use_tls:
                    server.starttls()
                if self.config.username and self.config.password:
                    server.login(self.config.username, self.config.password)
                server.send_message(msg)

            self.logger.info(f"Email sent: {subject}")
            return True
        except Exception as e:
            self.logger.error(f"Failed to send email '{subject}': {e}")
            return False
