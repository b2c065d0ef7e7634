"""
HTML email templates for Kleanr.

Every public function returns a complete HTML string ready for sending via
the ``send_email`` helper in ``notifications.py``.

Design tokens:
  - Primary accent: #0D9488 (teal)
  - Background:     #F8FAFC
  - Card:           #ffffff
  - Text dark:      #0F172A
  - Text muted:     #475569 / #64748B

All styles are inlined for email-client compatibility.  No external
resources are referenced.
"""

from html import escape as _esc


# ---------------------------------------------------------------------------
# Shared layout helpers
# ---------------------------------------------------------------------------

def _header():
    return (
        '<div style="text-align:center;margin-bottom:28px;">'
        '<h1 style="color:#0D9488;font-size:28px;margin:0;font-family:Arial,sans-serif;font-weight:700;">Kleanr</h1>'
        '<p style="color:#64748B;margin:4px 0 0;font-size:14px;">Home cleaning, simplified</p>'
        '</div>'
    )


def _footer():
    return (
        '<div style="text-align:center;margin-top:28px;padding-top:18px;border-top:1px solid #E2E8F0;'
        'color:#94A3B8;font-size:12px;line-height:1.6;">'
        '<p style="margin:0 0 4px;">You are receiving this email because of activity on your Kleanr account.</p>'
        '<p style="margin:0;">Questions? Reply to this email and the Kleanr Support Team will help.</p>'
        '</div>'
    )


def _wrap(body_html):
    """Wrap inner content in the common email shell."""
    return (
        '<!DOCTYPE html>'
        '<html lang="en"><head><meta charset="utf-8">'
        '<meta name="viewport" content="width=device-width,initial-scale=1.0">'
        '<title>Kleanr</title></head>'
        '<body style="margin:0;padding:0;background-color:#F1F5F9;">'
        '<div style="font-family:Arial,sans-serif;max-width:600px;margin:0 auto;background:#F8FAFC;padding:36px 20px;">'
        + _header()
        + '<div style="background:#ffffff;border-radius:12px;padding:28px;box-shadow:0 1px 3px rgba(0,0,0,0.08);">'
        + body_html
        + '</div>'
        + _footer()
        + '</div></body></html>'
    )


def _paragraph(text):
    return '<p style="color:#475569;line-height:1.6;">{}</p>'.format(_esc(str(text)))


def _detail_table(rows):
    """Teal-tinted detail box.  *rows* is a list of (label, value) tuples; empty values are skipped."""
    inner = ''
    for label, value in rows:
        if value in (None, ''):
            continue
        inner += (
            '<tr>'
            '<td style="padding:6px 0;color:#64748B;font-size:14px;">{label}</td>'
            '<td style="padding:6px 0;color:#0F172A;font-size:14px;font-weight:600;text-align:right;">{value}</td>'
            '</tr>'
        ).format(label=_esc(str(label)), value=_esc(str(value)))
    if not inner:
        return ''
    return (
        '<div style="background:#F0FDFA;border:1px solid #99F6E4;border-radius:8px;padding:16px 20px;margin:20px 0;">'
        '<table style="width:100%;border-collapse:collapse;">'
        + inner
        + '</table></div>'
    )


def _button(url, label):
    return (
        '<div style="text-align:center;margin:28px 0 12px;">'
        '<a href="{url}" style="display:inline-block;background:#0D9488;color:#ffffff;'
        'text-decoration:none;padding:14px 36px;border-radius:8px;font-size:16px;'
        'font-weight:600;line-height:1;">'.format(url=_esc(str(url)))
        + _esc(str(label))
        + '</a></div>'
    )


def _greeting(name):
    return _paragraph('Hi {},'.format(name or 'there'))


# ---------------------------------------------------------------------------
# Client invitations
# ---------------------------------------------------------------------------

def client_invitation_html(client_name, cleaner_name, invite_url, address=None):
    """Email sent to a prospective client when a cleaner invites them."""
    body = '<h2 style="color:#0F172A;margin:0 0 12px;font-size:22px;">You\'re invited to Kleanr</h2>'
    body += _greeting(client_name)
    body += _paragraph(
        '{} has invited you to book and manage your home cleanings on Kleanr.'.format(
            cleaner_name or 'Your cleaner'
        )
    )
    body += _detail_table([('Cleaner', cleaner_name), ('Home', address)])
    body += _paragraph('Create your account to confirm your details. It only takes a minute.')
    body += _button(invite_url, 'Accept Invitation')
    return _wrap(body)


def invitation_reminder_html(client_name, cleaner_name, invite_url):
    body = '<h2 style="color:#0F172A;margin:0 0 12px;font-size:22px;">Your invitation is waiting</h2>'
    body += _greeting(client_name)
    body += _paragraph(
        'Just a reminder that {} invited you to Kleanr. Your invitation link is still active.'.format(
            cleaner_name or 'your cleaner'
        )
    )
    body += _button(invite_url, 'Accept Invitation')
    return _wrap(body)


def invitation_accepted_html(cleaner_name, client_name, home_address):
    body = '<h2 style="color:#0F172A;margin:0 0 12px;font-size:22px;">Your client joined Kleanr</h2>'
    body += _greeting(cleaner_name)
    body += _paragraph('{} accepted your invitation and created an account.'.format(client_name or 'Your client'))
    body += _detail_table([('Client', client_name), ('Home', home_address)])
    body += _paragraph('Open the Kleanr app to set up their cleaning schedule.')
    return _wrap(body)


# ---------------------------------------------------------------------------
# In-app notification mirror
# ---------------------------------------------------------------------------

def notification_html(recipient_name, title, message, action_required=False):
    """Email copy of an in-app notification."""
    body = '<h2 style="color:#0F172A;margin:0 0 12px;font-size:22px;">{}</h2>'.format(_esc(str(title)))
    body += _greeting(recipient_name)
    body += _paragraph(message)
    if action_required:
        body += (
            '<p style="color:#B45309;font-size:14px;font-weight:600;line-height:1.6;">'
            'Action required: please open the Kleanr app to respond.</p>'
        )
    return _wrap(body)
