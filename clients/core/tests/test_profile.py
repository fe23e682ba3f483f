import unittest

from quickchat.errors import TransientError, ValidationError
from quickchat.kv_store import MemoryKeyValueStore
from quickchat.memory_backend import MemoryBackend, MemoryStore
from quickchat.profile import AvatarUpload, Profile, ProfileDraft, ProfileStore
from quickchat.session import SessionContext, SessionManager


class FlakyUploadBackend(MemoryBackend):
    def __init__(self, store):
        super().__init__(store)
        self.fail_uploads = False
        self.saves = []

    async def upload_file(self, data, name):
        if self.fail_uploads:
            raise TransientError("storage offline")
        return await super().upload_file(data, name)

    async def save(self, kind, record):
        self.saves.append(dict(record))
        return await super().save(kind, record)


class ProfileStoreTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = MemoryStore()
        self.backend = FlakyUploadBackend(self.store)
        user = await self.backend.signup("+15550001", "1234", {"phone": "+15550001", "is_registered": False})
        self.context = SessionContext(
            backend=self.backend, sessions=SessionManager(self.backend, MemoryKeyValueStore()), user=user
        )
        self.profiles = ProfileStore(self.context)

    async def test_first_save_completes_registration_last_and_once(self):
        await self.profiles.load_profile()
        result = await self.profiles.save_profile(ProfileDraft(name="  Alice ", bio="hi"), complete_registration=True)

        self.assertTrue(result.registered_now)
        self.assertEqual(result.changed, ("name", "bio"))
        self.assertEqual(self.backend.saves[-1], {"id": self.context.user.id, "is_registered": True})
        self.assertEqual(self.context.user.display_name, "Alice")
        self.assertTrue(self.context.user.is_registered)

        again = await self.profiles.save_profile(ProfileDraft(name="Alice", bio="hi"), complete_registration=True)
        self.assertFalse(again.registered_now)
        self.assertEqual(len(self.backend.saves), 2)

    async def test_only_changed_fields_are_sent(self):
        await self.profiles.save_profile(ProfileDraft(name="Alice", bio="old"))
        self.backend.saves.clear()

        await self.profiles.save_profile(ProfileDraft(name="Alice", bio="new"))
        self.assertEqual(self.backend.saves, [{"id": self.context.user.id, "bio": "new"}])

    async def test_blank_bio_unsets_field(self):
        await self.profiles.save_profile(ProfileDraft(name="Alice", bio="old"))
        await self.profiles.save_profile(ProfileDraft(name="Alice", bio="   "))
        profile = await self.profiles.load_profile()
        self.assertEqual(profile.bio, "")
        self.assertIsNone(self.context.user.bio)

    async def test_empty_name_is_rejected_before_any_call(self):
        with self.assertRaises(ValidationError):
            await self.profiles.save_profile(ProfileDraft(name="   ", bio="x"))
        self.assertEqual(self.backend.saves, [])

    async def test_avatar_upload_failure_does_not_block_other_fields(self):
        self.backend.fail_uploads = True
        with self.assertLogs("quickchat.profile", level="WARNING"):
            result = await self.profiles.save_profile(
                ProfileDraft(name="Alice", avatar=AvatarUpload(data=b"png", filename="me.png"))
            )

        self.assertTrue(result.avatar_failed)
        self.assertEqual(result.changed, ("name",))
        self.assertIsNone(result.profile.avatar)
        self.assertEqual(result.profile.name, "Alice")

    async def test_avatar_upload_resolves_url(self):
        result = await self.profiles.save_profile(
            ProfileDraft(name="Alice", avatar=AvatarUpload(data=b"png", filename="me.png"))
        )
        self.assertFalse(result.avatar_failed)
        self.assertTrue(result.profile.avatar_url.startswith("memory://files/"))
        self.assertEqual(self.store.read_file(result.profile.avatar.name), b"png")

    async def test_load_other_profile_leaves_own_state(self):
        other = MemoryBackend(self.store)
        bob = await other.signup("+15550002", "1234", {"display_name": "Bob"})
        profile = await self.profiles.load_profile(bob.id)
        self.assertEqual(profile.name, "Bob")
        self.assertIsNone(self.profiles.profile)


def test_draft_change_detection_trims():
    loaded = Profile(user_id="u1", identifier="+1", name="Alice", bio="")
    assert not ProfileDraft(name=" Alice ", bio="  ").has_changes(loaded)
    assert ProfileDraft(name="Alicia").has_changes(loaded)
    assert ProfileDraft(name="Alice", avatar=AvatarUpload(b"x", "a.png")).has_changes(loaded)


if __name__ == "__main__":
    unittest.main()
