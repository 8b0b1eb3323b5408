"""SendGrid email service for order and payment notifications"""
import os
from email_validator import validate_email, EmailNotValidError
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail, To
from flask import current_app, render_template


class EmailService:
    """Service for sending emails via SendGrid"""

    def __init__(self):
        self.api_key = os.environ.get('SENDGRID_API_KEY')
        self.from_email = os.environ.get('SENDGRID_FROM_EMAIL')
        self.timeout = float(os.environ.get('EMAIL_TIMEOUT', 30))

    def is_configured(self):
        """Check if SendGrid is properly configured"""
        return bool(self.api_key and self.from_email)

    def send_bulk_email(self, to_emails, subject, html_content, text_content=None):
        """
        Send an email to each recipient individually

        Args:
            to_emails: List of email addresses or list of (email, name) tuples
            subject: Email subject
            html_content: HTML email body
            text_content: Plain text email body (optional)

        Returns:
            tuple: (success: bool, message: str, response_status: int or None)
        """
        if not self.is_configured():
            return False, "SendGrid is not configured. Please add SENDGRID_API_KEY and SENDGRID_FROM_EMAIL.", None

        if not to_emails:
            return False, "No recipients specified.", None

        # Normalize to_emails to list of (email, name) tuples, dropping malformed addresses
        recipient_list = []
        for recipient in to_emails:
            email, name = recipient if isinstance(recipient, tuple) else (recipient, None)
            try:
                email = validate_email(email, check_deliverability=False).normalized
            except EmailNotValidError as e:
                current_app.logger.warning(f"Skipping invalid recipient {email}: {str(e)}")
                continue
            recipient_list.append((email, name))

        if not recipient_list:
            return False, "No valid recipients.", None

        successful_sends = 0
        failed_recipients = []

        sg = SendGridAPIClient(self.api_key)
        sg.client.timeout = self.timeout

        for email, name in recipient_list:
            try:
                message = Mail(
                    from_email=self.from_email,
                    to_emails=To(email=email, name=name) if name else email,
                    subject=subject,
                    plain_text_content=text_content,
                    html_content=html_content
                )

                response = sg.send(message)

                if 200 <= response.status_code < 300:
                    successful_sends += 1
                else:
                    failed_recipients.append(email)
                    current_app.logger.warning(f"Non-success status {response.status_code} for {email}")

            except Exception as e:
                failed_recipients.append(email)
                current_app.logger.error(f"Error sending email to {email}: {str(e)}")

        total_recipients = len(recipient_list)

        if successful_sends == total_recipients:
            return True, f"Email sent successfully to all {successful_sends} recipients.", 200
        elif successful_sends > 0:
            message = f"Email sent to {successful_sends}/{total_recipients} recipients. Failed: {', '.join(failed_recipients[:5])}"
            current_app.logger.warning(message)
            return True, message, 207
        else:
            message = f"Failed to send email to all {total_recipients} recipients."
            current_app.logger.error(message)
            return False, message, None

    def send_single_email(self, to_email, to_name, subject, html_content, text_content=None):
        """Send email to a single recipient"""
        return self.send_bulk_email([(to_email, to_name)], subject, html_content, text_content)

    def _app_url(self):
        return current_app.config.get('APP_URL', 'http://localhost:5000').rstrip('/')

    # Order and payment emails

    def send_work_delivered(self, client, job, freelancer):
        """Tell the client their order has been delivered"""
        order_ref = job.display_id or f"#{job.id}"
        html = render_template(
            'emails/work_delivered.html',
            client_name=client.name,
            job=job,
            order_ref=order_ref,
            freelancer_name=freelancer.name,
            app_url=self._app_url()
        )
        return self.send_single_email(client.email, client.name, f"Order {order_ref} - Work Delivered", html)

    def send_job_assigned(self, freelancer, job):
        """Tell a freelancer a job has been assigned to them"""
        deadline = job.deadline.strftime('%B %d, %Y').replace(' 0', ' ') if job.deadline else 'Not set'
        html = render_template(
            'emails/job_assigned.html',
            freelancer_name=freelancer.name,
            job=job,
            deadline=deadline,
            app_url=self._app_url()
        )
        return self.send_single_email(freelancer.email, freelancer.name, "New Job Assigned to You on TaskLynk!", html)

    def send_payment_received(self, freelancer, job, amount, new_balance):
        """Tell a freelancer a settled share was added to their balance"""
        html = render_template(
            'emails/payment_received.html',
            freelancer_name=freelancer.name,
            job=job,
            amount=amount,
            new_balance=new_balance,
            app_url=self._app_url()
        )
        return self.send_single_email(freelancer.email, freelancer.name, "Payment Received on TaskLynk!", html)

    def send_payment_confirmed(self, client, job, payment):
        """Tell the client their payment went through and the order is complete"""
        html = render_template(
            'emails/payment_confirmed.html',
            client_name=client.name,
            job=job,
            payment=payment,
            app_url=self._app_url()
        )
        return self.send_single_email(client.email, client.name, "Payment Confirmed - Order Complete!", html)

    def send_payment_failed(self, client, payment, reason=None, manual=False):
        """Tell the client their payment failed and how to retry"""
        html = render_template(
            'emails/payment_failed.html',
            client_name=client.name,
            payment=payment,
            reason=reason,
            manual=manual,
            app_url=self._app_url()
        )
        subject = "Payment Verification Failed" if manual else "M-Pesa Payment Failed"
        return self.send_single_email(client.email, client.name, subject, html)


# Global instance
email_service = EmailService()
