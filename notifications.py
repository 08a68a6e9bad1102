import requests
from flask import current_app

from models import db, Notification


def notify(user_id, title, message, type="info", link=None):
    """Fire-and-forget notification: stores an in-app row and, if configured,
    forwards it to the outbound webhook. Never raises; callers have already
    committed the change being announced."""
    if not user_id:
        current_app.logger.warning("Dropping notification without recipient: %s", title)
        return None

    notification = Notification(user_id=str(user_id), title=title, message=message, type=type, link=link)
    try:
        db.session.add(notification)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        current_app.logger.error("Failed to store notification for %s: %s", user_id, e)
        return None

    _post_webhook(notification)
    return notification


def _post_webhook(notification):
    url = current_app.config.get("NOTIFY_WEBHOOK_URL")
    if not url:
        return
    try:
        response = requests.post(
            url,
            json=notification.to_dict(),
            headers={"Content-Type": "application/json"},
            timeout=current_app.config.get("NOTIFY_TIMEOUT", 10),
        )
        current_app.logger.debug("Notification webhook response code: %s", response.status_code)
        if response.status_code >= 400:
            current_app.logger.warning(
                "Notification webhook rejected %s. Status Code: %s. Response: %s",
                notification.id, response.status_code, response.text,
            )
    except requests.RequestException as e:
        current_app.logger.warning("Notification webhook failed for %s: %s", notification.id, e)
