import unittest
from unittest.mock import MagicMock

from shared.pin import hash_pin
from storefront import accounts
from storefront.accounts import (
    AccountError,
    approve_profile,
    list_profiles,
    login_credentials,
    login_pin,
    logout,
    register,
    require_approved_member,
    require_owner,
    resolve_viewer,
    session_status,
)
from storefront.auth import InMemoryAuthClient, username_to_email
from storefront.captcha import CaptchaResult, StaticCaptchaVerifier
from storefront.challenges import InMemoryChallengeStore
from storefront.db import InMemoryDbClient, create_storefront_schema, eq

PASSWORD = "Clave123!"
PHONE = "987654321"
PHONE_E164 = "+51987654321"


class AccountsTestCase(unittest.TestCase):
    def setUp(self):
        self.auth = InMemoryAuthClient()
        self.db = create_storefront_schema(InMemoryDbClient())
        self.captcha = StaticCaptchaVerifier()
        self.challenges = InMemoryChallengeStore()

    def add_member(self, username="ana", approved=True, role=None, pin="1234"):
        user = self.auth.add_user(username_to_email(username), PASSWORD, user_id=f"u-{username}")
        self.db.seed(
            "profiles",
            {
                "id": user.id,
                "username": username,
                "purchase_pin": pin,
                "is_approved": approved,
                "phone_e164": PHONE_E164,
                "role": role,
                "created_at": f"2025-01-0{len(self.db.table_rows('profiles')) + 1}",
            },
        )
        return user

    def profile(self, user_id):
        return [row for row in self.db.table_rows("profiles") if row["id"] == user_id][0]

    def register(self, **overrides):
        values = dict(
            username="ana",
            password=PASSWORD,
            pin="1234",
            country_iso="PE",
            phone=PHONE,
            captcha_token="token",
        )
        values.update(overrides)
        return register(self.auth, self.db, self.captcha, **values)

    def login_credentials(self, **overrides):
        values = dict(
            username="ana",
            password=PASSWORD,
            country_iso="pe",
            phone=PHONE,
            captcha_token="token",
        )
        values.update(overrides)
        return login_credentials(self.auth, self.db, self.captcha, self.challenges, **values)


class RegisterTests(AccountsTestCase):
    def test_register_creates_pending_profile_and_closes_session(self):
        message = self.register(username=" ana ")

        self.assertEqual(message, "Cuenta creada. Espera aprobacion del owner.")
        rows = self.db.table_rows("profiles")
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["username"], "ana")
        self.assertEqual(rows[0]["phone_e164"], PHONE_E164)
        self.assertEqual(rows[0]["country_iso"], "PE")
        self.assertEqual(rows[0]["country_dial"], "+51")
        self.assertFalse(rows[0]["is_approved"])
        self.assertEqual(self.auth.sessions, {})

    def test_validation_order(self):
        cases = [
            (dict(pin="12", country_iso=None), "El codigo de compra debe tener 4 digitos"),
            (dict(country_iso=None, captcha_token=""), accounts.COUNTRY_REQUIRED),
            (dict(phone="12", captcha_token=""), accounts.PHONE_INVALID),
            (dict(captcha_token=" "), accounts.CAPTCHA_MISSING),
            (dict(username="  "), "Ingresa un usuario valido"),
            (dict(username="a b c"), "Solo letras, números, . _ -"),
            (dict(password="abc"), "Mínimo 7 letras o más"),
        ]
        for overrides, expected in cases:
            with self.subTest(overrides=overrides):
                with self.assertRaises(AccountError) as ctx:
                    self.register(**overrides)
                self.assertEqual(ctx.exception.message, expected)
        self.assertEqual(self.auth.accounts, {})

    def test_pin_is_normalized_before_storing(self):
        self.register(pin="12-34")
        self.assertEqual(self.db.table_rows("profiles")[0]["purchase_pin"], "1234")

    def test_rejected_captcha(self):
        self.captcha = StaticCaptchaVerifier(accept=False)
        with self.assertRaises(AccountError) as ctx:
            self.register()
        self.assertEqual(ctx.exception.message, "No se pudo validar el captcha. Intenta de nuevo.")

    def test_duplicate_user(self):
        self.register()
        with self.assertRaises(AccountError) as ctx:
            self.register()
        self.assertEqual(ctx.exception.message, "Ese usuario ya existe")

    def test_profile_insert_failure_still_signs_out(self):
        self.db.deny("profiles", "insert")
        with self.assertRaises(AccountError) as ctx:
            self.register()
        self.assertIn("no se pudo guardar el perfil", ctx.exception.message)
        self.assertEqual(self.auth.sessions, {})


class LoginTests(AccountsTestCase):
    def test_two_step_login(self):
        user = self.add_member()

        challenge = self.login_credentials()

        self.assertEqual(challenge.user_id, user.id)
        self.assertEqual(challenge.pin_hash, hash_pin("1234"))
        self.assertEqual(self.auth.sessions, {})

        session = login_pin(
            self.auth,
            self.db,
            self.challenges,
            challenge_id=challenge.challenge_id,
            username="ana",
            password=PASSWORD,
            pin="1234",
        )

        self.assertEqual(session.user.id, user.id)
        self.assertEqual(self.auth.sessions, {session.access_token: user.id})
        self.assertIsNone(self.challenges.get(challenge.challenge_id))

    def test_pin_step_accepts_formatted_pin(self):
        user = self.add_member()
        challenge = self.login_credentials()

        session = login_pin(
            self.auth,
            self.db,
            self.challenges,
            challenge_id=challenge.challenge_id,
            username="ana",
            password=PASSWORD,
            pin="12 34",
        )

        self.assertEqual(session.user.id, user.id)

    def test_credential_failures(self):
        self.add_member()
        self.add_member("bea", approved=False)

        with self.assertRaises(AccountError) as wrong_password:
            self.login_credentials(password="Otra123!")
        self.assertEqual(wrong_password.exception.status_code, 401)

        with self.assertRaises(AccountError) as unapproved:
            self.login_credentials(username="bea")
        self.assertEqual(unapproved.exception.message, accounts.NOT_APPROVED_BY_OWNER)
        self.assertEqual(unapproved.exception.status_code, 403)

        with self.assertRaises(AccountError) as wrong_phone:
            self.login_credentials(phone="987654320")
        self.assertEqual(wrong_phone.exception.message, "Telefono o codigo de pais incorrecto")

        self.assertEqual(self.auth.sessions, {})
        self.assertEqual(self.challenges.items, {})

    def test_captcha_messages(self):
        self.add_member()
        self.captcha = StaticCaptchaVerifier(accept=False)
        with self.assertRaises(AccountError) as rejected:
            self.login_credentials()
        self.assertEqual(
            rejected.exception.message,
            "No se pudo validar el captcha (turnstile-failed). Intenta de nuevo.",
        )

        self.captcha = MagicMock()
        self.captcha.verify.return_value = CaptchaResult(False, 502, ["turnstile-request-failed"])
        with self.assertRaises(AccountError) as network:
            self.login_credentials()
        self.assertEqual(network.exception.message, accounts.CAPTCHA_NETWORK)

    def test_pin_step_failures(self):
        self.add_member()
        challenge = self.login_credentials()

        def attempt(**overrides):
            values = dict(
                challenge_id=challenge.challenge_id,
                username="ana",
                password=PASSWORD,
                pin="1234",
            )
            values.update(overrides)
            return login_pin(self.auth, self.db, self.challenges, **values)

        with self.assertRaises(AccountError) as unknown:
            attempt(challenge_id="nope")
        self.assertEqual(unknown.exception.status_code, 409)

        with self.assertRaises(AccountError) as other_user:
            attempt(username="bea")
        self.assertEqual(other_user.exception.message, accounts.RESTART_LOGIN)

        with self.assertRaises(AccountError) as short_pin:
            attempt(pin="12a")
        self.assertEqual(short_pin.exception.message, "Ingresa tu codigo de compra de 4 digitos")

        with self.assertRaises(AccountError) as wrong_pin:
            attempt(pin="9999")
        self.assertEqual(wrong_pin.exception.message, "Codigo de compra incorrecto")

        self.assertIsNotNone(self.challenges.get(challenge.challenge_id))

    def test_approval_revoked_between_steps(self):
        user = self.add_member()
        challenge = self.login_credentials()
        self.db.update("profiles", {"is_approved": False}, filters=[eq("id", user.id)])

        with self.assertRaises(AccountError) as ctx:
            login_pin(
                self.auth,
                self.db,
                self.challenges,
                challenge_id=challenge.challenge_id,
                username="ana",
                password=PASSWORD,
                pin="1234",
            )

        self.assertEqual(ctx.exception.status_code, 403)
        self.assertEqual(self.auth.sessions, {})
        self.assertIsNone(self.challenges.get(challenge.challenge_id))

    def test_session_status_and_logout(self):
        user = self.add_member()
        token = self.auth.issue_token(user.id)

        self.assertEqual(session_status(self.auth, token), {"authenticated": True, "redirect": "/inicio"})
        self.assertEqual(session_status(self.auth, None), {"authenticated": False})

        logout(self.auth, token)
        self.assertEqual(session_status(self.auth, token), {"authenticated": False})

        self.auth.sign_out_error = "network down"
        with self.assertRaises(AccountError) as ctx:
            logout(self.auth, "any")
        self.assertEqual(ctx.exception.status_code, 502)


class OwnerTests(AccountsTestCase):
    def test_require_owner(self):
        owner = self.add_member("root", role="OWNER")
        member = self.add_member("ana")

        user, _ = require_owner(self.auth, self.db, self.auth.issue_token(owner.id))
        self.assertEqual(user.id, owner.id)

        with self.assertRaises(AccountError) as anonymous:
            require_owner(self.auth, self.db, None)
        self.assertEqual(anonymous.exception.status_code, 401)

        with self.assertRaises(AccountError) as not_owner:
            require_owner(self.auth, self.db, self.auth.issue_token(member.id))
        self.assertEqual(not_owner.exception.status_code, 403)

    def test_unapproved_owner_is_signed_out(self):
        owner = self.add_member("root", role="owner", approved=False)
        token = self.auth.issue_token(owner.id)

        with self.assertRaises(AccountError) as ctx:
            require_owner(self.auth, self.db, token)

        self.assertEqual(ctx.exception.status_code, 401)
        self.assertNotIn(token, self.auth.sessions)

    def test_list_and_approve(self):
        self.add_member("root", role="owner")
        pending = self.add_member("bea", approved=False)

        profiles = list_profiles(self.db)
        self.assertEqual([p["username"] for p in profiles], ["bea", "root"])
        self.assertEqual(
            set(profiles[0]), {"id", "username", "role", "is_approved", "balance", "created_at"}
        )

        refreshed = approve_profile(self.db, pending.id)
        self.assertTrue(refreshed[0]["is_approved"])
        self.assertTrue(self.profile(pending.id)["is_approved"])

    def test_list_failure(self):
        self.db.deny("profiles", "select")
        with self.assertRaises(AccountError) as ctx:
            list_profiles(self.db)
        self.assertEqual(ctx.exception.status_code, 502)

    def test_require_approved_member(self):
        member = self.add_member("ana")
        pending = self.add_member("bea", approved=False)

        user, _, username = require_approved_member(
            self.auth, self.db, self.auth.issue_token(member.id)
        )
        self.assertEqual((user.id, username), (member.id, "ana"))

        with self.assertRaises(AccountError) as ctx:
            require_approved_member(self.auth, self.db, self.auth.issue_token(pending.id))
        self.assertEqual(ctx.exception.status_code, 403)


class ViewerTests(AccountsTestCase):
    def test_guest(self):
        viewer = resolve_viewer(self.auth, self.db, None)
        self.assertEqual(viewer.mode, "guest")
        self.assertFalse(viewer.logged_in)
        self.assertEqual(viewer.account_href, "/login")

    def test_affiliate(self):
        user = self.add_member()
        self.db.register_procedure("is_affiliate_enabled", lambda params, user_id: user_id == user.id)

        viewer = resolve_viewer(self.auth, self.db, self.auth.issue_token(user.id))

        self.assertTrue(viewer.is_affiliate)
        self.assertEqual(viewer.account_label, "ana")
        self.assertEqual(viewer.account_href, "/dashboard")
        self.assertEqual(viewer.message, "")

    def test_logged_in_without_affiliation(self):
        user = self.add_member()

        viewer = resolve_viewer(self.auth, self.db, self.auth.issue_token(user.id))

        self.assertEqual(viewer.mode, "guest")
        self.assertTrue(viewer.logged_in)
        self.assertIn("sin afiliacion activa", viewer.message)

    def test_unapproved_on_products_page(self):
        user = self.add_member(approved=False)
        token = self.auth.issue_token(user.id)

        viewer = resolve_viewer(self.auth, self.db, token)

        self.assertFalse(viewer.logged_in)
        self.assertIn("aun no esta aprobada", viewer.message)
        self.assertNotIn(token, self.auth.sessions)

    def test_unapproved_on_home_page(self):
        user = self.add_member(approved=False)
        token = self.auth.issue_token(user.id)

        viewer = resolve_viewer(self.auth, self.db, token, sign_out_unapproved=False)

        self.assertTrue(viewer.logged_in)
        self.assertEqual(viewer.account_label, "ana")
        self.assertIn("no esta aprobada todavia", viewer.message)
        self.assertIn(token, self.auth.sessions)

    def test_unreadable_profile(self):
        user = self.add_member()
        self.db.deny("profiles", "select")

        viewer = resolve_viewer(self.auth, self.db, self.auth.issue_token(user.id))

        self.assertTrue(viewer.logged_in)
        self.assertEqual(viewer.account_label, "Mi cuenta")
        self.assertEqual(viewer.mode, "guest")


if __name__ == "__main__":
    unittest.main()
