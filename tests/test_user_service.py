import pytest

from bookshelf.service.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from bookshelf.service.fs import ThumbnailUpload
from bookshelf.storage.models import UserQuery

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


async def _create(services, email, *, name="Ada Reader", is_admin=False):
    return await services.users.create_user(name, email, is_admin=is_admin)


class TestUpdate:
    async def test_user_updates_own_profile(self, services):
        user = await _create(services, "ada@example.com")
        updated = await services.users.update_user(user, user.id, name="Ada Lovelace")
        assert updated.name == "Ada Lovelace"

    async def test_cannot_update_someone_else(self, services):
        user = await _create(services, "ada@example.com")
        other = await _create(services, "bo@example.com")
        with pytest.raises(AuthorizationError):
            await services.users.update_user(user, other.id, name="Hijacked")

    async def test_only_admin_changes_admin_flag(self, services):
        user = await _create(services, "ada@example.com")
        admin = await _create(services, "root@example.com", is_admin=True)

        with pytest.raises(AuthorizationError):
            await services.users.update_user(user, user.id, is_admin=True)
        promoted = await services.users.update_user(admin, user.id, is_admin=True)
        assert promoted.is_admin

    async def test_changing_email_clears_verification(self, services):
        user = await _create(services, "ada@example.com")
        await services.users.mark_email_verified(user.id)

        same = await services.users.update_user(user, user.id, email="ADA@example.com")
        assert same.is_verified

        moved = await services.users.update_user(user, user.id, email="ada@new.example.com")
        assert moved.email == "ada@new.example.com"
        assert not moved.is_verified

    async def test_duplicate_email_is_conflict(self, services):
        user = await _create(services, "ada@example.com")
        await _create(services, "bo@example.com")
        with pytest.raises(ConflictError):
            await services.users.update_user(user, user.id, email="bo@example.com")
        with pytest.raises(ConflictError):
            await _create(services, "Bo@Example.com")

    async def test_update_invalidates_cached_user(self, services):
        user = await _create(services, "ada@example.com")
        await services.users.get_user(user.id)
        assert await services.cache.get_user(user.id) is not None

        await services.users.update_user(user, user.id, name="Ada Lovelace")

        assert await services.cache.get_user(user.id) is None
        assert (await services.users.get_user(user.id)).name == "Ada Lovelace"


class TestAdminActions:
    async def test_toggle_admin(self, services):
        admin = await _create(services, "root@example.com", is_admin=True)
        user = await _create(services, "ada@example.com")

        assert (await services.users.toggle_admin(admin, user.id)).is_admin
        assert not (await services.users.toggle_admin(admin, user.id)).is_admin

    async def test_cannot_toggle_self(self, services):
        admin = await _create(services, "root@example.com", is_admin=True)
        with pytest.raises(ValidationError) as exc:
            await services.users.toggle_admin(admin, admin.id)
        assert exc.value.status_code == 400

    async def test_cannot_delete_self(self, services):
        admin = await _create(services, "root@example.com", is_admin=True)
        with pytest.raises(ValidationError):
            await services.users.delete_user(admin, admin.id)

    async def test_delete_missing_user(self, services):
        admin = await _create(services, "root@example.com", is_admin=True)
        with pytest.raises(NotFoundError):
            await services.users.delete_user(admin, "missing")

    async def test_delete_cascades_books_sessions_and_files(self, services):
        admin = await _create(services, "root@example.com", is_admin=True)
        user = await _create(services, "ada@example.com")
        book = await services.books.create_book(
            user,
            title="Dune",
            author="Frank Herbert",
            thumbnail=ThumbnailUpload("cover.png", "image/png", PNG),
        )
        plain = await services.books.create_book(user, title="Emma", author="Jane Austen")
        thumbnail = services.files.path_for(book.thumbnail_url)
        session_id = await services.sessions.create(user)
        # warm the single-book entries
        await services.books.get_book(book.id)
        await services.books.get_book(plain.id)
        assert await services.cache.get_book(plain.id) is not None

        await services.users.delete_user(admin, user.id)

        assert await services.users.get_user(user.id) is None
        assert await services.cache.get_book(book.id) is None
        assert await services.cache.get_book(plain.id) is None
        assert await services.books.get_book(book.id) is None
        assert await services.books.get_book(plain.id) is None
        assert await services.sessions.get(session_id) is None
        assert not thumbnail.exists()


class TestListingAndStats:
    async def test_list_users_filters_and_counts_books(self, services):
        admin = await _create(services, "root@example.com", is_admin=True)
        user = await _create(services, "ada@example.com")
        await services.books.create_book(user, title="Dune", author="Frank Herbert")

        admins = await services.users.list_users(UserQuery(is_admin=True))
        assert [u.id for u in admins.items] == [admin.id]

        everyone = await services.users.list_users(UserQuery())
        counts = {u.email: u.books_count for u in everyone.items}
        assert counts == {"root@example.com": 0, "ada@example.com": 1}

    async def test_new_user_invalidates_cached_list(self, services):
        await _create(services, "ada@example.com")
        assert (await services.users.list_users(UserQuery())).pagination["total_items"] == 1
        await _create(services, "bo@example.com")
        assert (await services.users.list_users(UserQuery())).pagination["total_items"] == 2

    async def test_stats(self, services):
        await _create(services, "root@example.com", is_admin=True)
        user = await _create(services, "ada@example.com")
        await _create(services, "bo@example.com")
        await services.users.mark_email_verified(user.id)

        stats = await services.users.get_stats()

        assert stats == {
            "total_users": 3,
            "verified_users": 1,
            "unverified_users": 2,
            "admin_users": 1,
            "regular_users": 2,
            "recent_users": 3,
            "verification_rate": 33.33,
        }

    async def test_stats_on_empty_store(self, services):
        stats = await services.users.get_stats()
        assert stats["total_users"] == 0
        assert stats["verification_rate"] == 0.0
