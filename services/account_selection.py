"""
Sign-in form state for choosing between accounts that share an email.

Clients drive this from their input events: ``set_identifier`` on every
keystroke, ``lookup_due`` on a timer, ``apply_check_result`` with the
``/check-accounts`` response and ``apply_login_response`` with the
``/login`` response.  The only state that matters to the user is whether
the account selector is shown and which account type is chosen.
"""

LOOKUP_DEBOUNCE_SECONDS = 0.5


class SignInSelection:

    def __init__(self, debounce=LOOKUP_DEBOUNCE_SECONDS):
        self.debounce = debounce
        self.identifier = ""
        self.account_options = []
        self.selected_account_type = None
        self.show_selector = False
        self._lookup_at = None
        self._looked_up = None

    # -- identifier input -------------------------------------------------

    def set_identifier(self, identifier, now):
        """Record a new identifier; schedules a lookup only for emails."""
        identifier = (identifier or "").strip()
        if identifier == self.identifier:
            return
        self.identifier = identifier
        self.selected_account_type = None
        self.account_options = []
        self.show_selector = False
        self._lookup_at = now + self.debounce if "@" in identifier else None

    def lookup_due(self, now):
        """True once the debounce has elapsed for an identifier not yet looked up."""
        if self._lookup_at is None or now < self._lookup_at:
            return False
        return self._looked_up != self.identifier

    def mark_lookup_started(self):
        self._looked_up = self.identifier
        self._lookup_at = None

    # -- server responses -------------------------------------------------

    def apply_check_result(self, result):
        """Handle a ``/check-accounts`` response body."""
        result = result or {}
        if result.get("multipleAccounts") and result.get("accountOptions"):
            self._show(result["accountOptions"])
        else:
            self.cancel_selection()

    def apply_login_response(self, status_code, body):
        """Handle a ``/login`` response.  Returns True if the selector is now shown."""
        body = body or {}
        if status_code == 300 or body.get("requiresAccountSelection"):
            self._show(body.get("accountOptions") or [])
            return True
        return False

    def _show(self, options):
        self.account_options = list(options)
        types = [o.get("accountType") for o in self.account_options]
        if self.selected_account_type not in types:
            self.selected_account_type = None
        self.show_selector = len(self.account_options) > 1

    # -- user choices -----------------------------------------------------

    def select(self, account_type):
        if account_type not in [o.get("accountType") for o in self.account_options]:
            raise ValueError("Unknown account type: {}".format(account_type))
        self.selected_account_type = account_type

    def cancel_selection(self):
        self.show_selector = False
        self.account_options = []
        self.selected_account_type = None

    def login_payload(self, password):
        payload = {"identifier": self.identifier, "password": password}
        if self.show_selector and self.selected_account_type:
            payload["accountType"] = self.selected_account_type
        return payload
