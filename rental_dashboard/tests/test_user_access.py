from support import DatabaseTestCase

from rental_dashboard.services import user_access_service
from rental_dashboard.services.user_access_service import (
    authenticate,
    create_session,
    create_user,
    get_session,
    get_user_by_email,
    remove_session,
)


class UserAccessTests(DatabaseTestCase):
    def test_create_user_and_authenticate(self):
        user = create_user(self.db, " Dono@Locadora.com.br ", "segredo-forte", business_name="Locadora Sol")
        self.db.commit()

        self.assertEqual(user.Email, "dono@locadora.com.br")
        self.assertNotEqual(user.PasswordHash, "segredo-forte")
        self.assertEqual(get_user_by_email(self.db, "DONO@locadora.com.br").UserID, user.UserID)
        self.assertIsNotNone(authenticate(self.db, "dono@locadora.com.br", "segredo-forte"))
        self.assertIsNone(authenticate(self.db, "dono@locadora.com.br", "errada-123"))
        self.assertEqual(user.Profile.BusinessName, "Locadora Sol")

    def test_inactive_user_cannot_authenticate(self):
        user = create_user(self.db, "x@y.com", "segredo-forte")
        user.IsActive = False
        self.db.commit()
        self.assertIsNone(authenticate(self.db, "x@y.com", "segredo-forte"))

    def test_create_user_validation(self):
        create_user(self.db, "x@y.com", "segredo-forte")
        with self.assertRaises(ValueError):
            create_user(self.db, "x@y.com", "outro-segredo")
        with self.assertRaises(ValueError):
            create_user(self.db, "sem-arroba", "segredo-forte")
        with self.assertRaises(ValueError):
            create_user(self.db, "z@y.com", "curta")

    def test_session_round_trip_and_revocation(self):
        token = create_session({"userID": 3, "email": "x@y.com"})
        session = get_session(token)
        self.assertEqual(session["userID"], 3)

        remove_session(token)
        self.assertIsNone(get_session(token))

    def test_tampered_and_expired_tokens_are_rejected(self):
        token = create_session({"userID": 3})
        encoded, signature = token.split(".", 1)
        self.assertIsNone(get_session(f"{encoded}x.{signature}"))
        self.assertIsNone(get_session("garbage"))
        self.assertIsNone(get_session(None))

        original_ttl = user_access_service.SESSION_TTL_SECONDS
        user_access_service.SESSION_TTL_SECONDS = -1
        try:
            expired = create_session({"userID": 3})
        finally:
            user_access_service.SESSION_TTL_SECONDS = original_ttl
        self.assertIsNone(get_session(expired))

    def test_only_revoked_tokens_are_kept_in_memory(self):
        user_access_service._REVOKED.clear()
        tokens = [create_session({"userID": n}) for n in range(1, 6)]
        for token in tokens:
            self.assertIsNotNone(get_session(token))
        self.assertEqual(user_access_service._REVOKED, {})

        remove_session(tokens[0])
        self.assertEqual(list(user_access_service._REVOKED), [tokens[0]])
        self.assertIsNotNone(get_session(tokens[1]))

        original_ttl = user_access_service.SESSION_TTL_SECONDS
        user_access_service.SESSION_TTL_SECONDS = -1
        try:
            expired = create_session({"userID": 9})
        finally:
            user_access_service.SESSION_TTL_SECONDS = original_ttl
        remove_session(expired)
        self.assertNotIn(expired, user_access_service._REVOKED)
