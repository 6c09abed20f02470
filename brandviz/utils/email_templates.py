"""
Templates HTML de los emails transaccionales
"""

from html import escape
from typing import Any, Dict, List, Optional

from .helpers import utcnow

SUPPORT_EMAIL = "support@brandvisibilitytracker.com"

_STYLE = """
  body { font-family: -apple-system, 'Segoe UI', Roboto, Arial, sans-serif; background-color: #f8fafc; margin: 0; }
  .container { max-width: 600px; margin: 40px auto; background: #ffffff; border-radius: 16px; overflow: hidden; }
  .header { background: linear-gradient(135deg, #636AE8 0%, #4F46E5 100%); padding: 32px; text-align: center; }
  .logo { color: #ffffff; font-size: 26px; font-weight: 700; }
  .subtitle { color: rgba(255, 255, 255, 0.9); margin: 8px 0 0 0; }
  .content { padding: 32px; color: #4a5568; line-height: 1.6; }
  h1 { color: #1a202c; text-align: center; }
  .details { background: #f7fafc; border-left: 4px solid #636AE8; padding: 16px 24px; border-radius: 8px; }
  .button { display: inline-block; padding: 14px 28px; background: #4F46E5; color: #ffffff !important;
            border-radius: 12px; text-decoration: none; font-weight: 600; }
  .center { text-align: center; margin: 32px 0; }
  .expire { background: #fef5e7; border: 1px solid #f6e05e; border-radius: 8px; padding: 12px; color: #744210; }
  .footer { padding: 24px 32px; font-size: 13px; color: #718096; text-align: center; }
"""


def _layout(title: str, body: str, footer_note: str) -> str:
    return f"""
<html>
  <head><style>{_STYLE}</style></head>
  <body>
    <div class="container">
      <div class="header">
        <div class="logo">Brand Visibility Tracker</div>
        <p class="subtitle">Professional Brand Analysis Platform</p>
      </div>
      <div class="content">
        <h1>{title}</h1>
        {body}
      </div>
      <div class="footer">
        <p>Contact us at <a href="mailto:{SUPPORT_EMAIL}">{SUPPORT_EMAIL}</a></p>
        <p>{footer_note}</p>
      </div>
    </div>
  </body>
</html>
"""


def _details(rows: List[tuple]) -> str:
    items = "".join(
        f"<div><strong>{escape(label)}:</strong> {escape(str(value))}</div>"
        for label, value in rows if value
    )
    return f'<div class="details">{items}</div>'


def _button(link: str, label: str) -> str:
    return f'<div class="center"><a href="{escape(link, quote=True)}" class="button">{label}</a></div>'


def verification_email(link: str, user_email: Optional[str] = None, user_name: Optional[str] = None) -> str:
    greeting = f"Welcome, {escape(user_name)}!" if user_name else "Welcome!"
    body = f"""
        <h3>{greeting}</h3>
        <p>Thank you for joining Brand Visibility Tracker. Verify your email address to activate your
        account and start tracking how AI models talk about your brand.</p>
        {_details([("Email Address", user_email), ("Account Status", "Pending Verification"),
                   ("Registration Date", utcnow().strftime("%Y-%m-%d"))])}
        {_button(link, "Verify My Email Address")}
        <p class="expire">This verification link will expire in 30 minutes. If it expires, you can request
        a new verification email from the login page.</p>
        <p>Having trouble with the button? Copy and paste this link into your browser:<br>{escape(link)}</p>
    """
    return _layout(
        "Verify Your Email Address", body,
        "If you didn't create an account with us, please ignore this email."
    )


def reset_password_email(link: str, user_email: Optional[str] = None) -> str:
    body = f"""
        <p>We received a request to reset your password. If you didn't make this request, please ignore
        this email and your password will remain unchanged.</p>
        {_details([("Account Email", user_email), ("Request Type", "Password Reset"),
                   ("Request Time", utcnow().strftime("%Y-%m-%d %H:%M UTC"))])}
        {_button(link, "Reset My Password")}
        <p class="expire">This password reset link will expire in 30 minutes. If you need more time,
        request another password reset from the login page.</p>
    """
    return _layout(
        "Password Reset Request", body,
        "If you didn't request a password reset, please contact our support team immediately."
    )


def invite_member_email(link: str, brand_name: Optional[str] = None, inviter_name: Optional[str] = None) -> str:
    who = f"{escape(inviter_name)} has invited you" if inviter_name else "You have been invited"
    brand = escape(brand_name) if brand_name else "a brand"
    body = f"""
        <p>{who} to join {brand} on Brand Visibility Tracker, the platform for brand analysis and
        visibility tracking.</p>
        {_details([("Brand Name", brand_name), ("Invited by", inviter_name), ("Role", "Team Member")])}
        {_button(link, "Accept Invitation &amp; Get Started")}
        <p class="expire">This invitation link will expire in 7 days.</p>
    """
    return _layout(
        "You're Invited!", body,
        "If you didn't expect this invitation, you can safely ignore this email."
    )


def score_color(score: float) -> str:
    if score >= 80:
        return "#22c55e"
    if score >= 60:
        return "#eab308"
    if score >= 40:
        return "#f97316"
    return "#ef4444"


def performance_insight(score: float) -> str:
    if score >= 80:
        return "Excellent performance! Your brand visibility is strong across all analyzed areas."
    if score >= 60:
        return "Good performance with room for improvement in specific areas."
    if score >= 40:
        return "Moderate performance. Consider focusing on key optimization opportunities."
    return ("Significant opportunities for improvement identified. "
            "Let's work on enhancing your brand visibility.")


def analysis_completion_email(brand_name: str, dashboard_link: str, results: Dict[str, Any],
                              user_name: Optional[str] = None) -> str:
    """
    results: total_analyses, average_score, average_weighted_score y completion_time (ms)
    """
    seconds = round(results["completion_time"] / 1000)
    average = results["average_score"]
    weighted = results["average_weighted_score"]
    greeting = f"Great news, {escape(user_name)}!" if user_name else "Great news!"
    body = f"""
        <h3>{greeting}</h3>
        <p>We've completed the analysis of <strong>{escape(brand_name)}</strong> and the results are
        now available in your dashboard.</p>
        {_details([("Brand Analyzed", brand_name), ("Processing Time", f"{seconds} seconds"),
                   ("Total Analyses", results["total_analyses"])])}
        <div class="center">
          <div>Overall Performance Score</div>
          <div style="font-size: 40px; font-weight: 700; color: {score_color(average)};">{average:g}%</div>
          <p>{performance_insight(average)}</p>
          <div>Weighted Score:
            <strong style="color: {score_color(weighted)};">{weighted:g}%</strong></div>
        </div>
        {_button(dashboard_link, "View Complete Analysis Report")}
    """
    return _layout(
        "Analysis Complete!", body,
        "This analysis was automatically generated by Brand Visibility Tracker."
    )


def analysis_failure_email(brand_name: str, error_message: str) -> str:
    body = f"""
        <p>Unfortunately, the analysis for <strong>{escape(brand_name)}</strong> failed to complete.</p>
        <p>Please try again or contact support if the issue persists.</p>
        <p>Error: {escape(error_message)}</p>
    """
    return _layout("Analysis Failed", body, "This email was sent by Brand Visibility Tracker.")
