"""Integration tests for admin login and admin routes."""

import pytest
from datasette.app import Datasette

ADMIN_PASSWORD = "adminpass"


async def login(datasette, password=ADMIN_PASSWORD, username=None, ip="203.0.113.9"):
    body = {"password": password}
    if username is not None:
        body["username"] = username
    return await datasette.client.post(
        "/api/admin/login", json=body, headers={"x-forwarded-for": ip}
    )


SHORTLIST = [
    {"externalId": "OL1W", "title": "Middlemarch", "author": "George Eliot"},
    {"externalId": "OL2W", "title": "Persuasion", "author": "Jane Austen"},
    {"externalId": "OL3W", "title": "Villette", "author": "Charlotte Bronte"},
]


class TestLogin:
    async def test_login_sets_admin_actor(self, datasette, admin_account):
        response = await login(datasette)

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert data["actor"]["principal_type"] == "admin"
        assert data["actor"]["display"] == "Club Admin"
        assert "ds_actor" in response.cookies

    async def test_login_cookie_opens_admin_routes(self, datasette, admin_account):
        response = await login(datasette)
        cookies = {"ds_actor": response.cookies["ds_actor"]}

        response = await datasette.client.get("/api/admin/vote-results", cookies=cookies)
        assert response.status_code == 200

    async def test_wrong_password(self, datasette, admin_account):
        response = await login(datasette, password="wrong")

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid password"}
        assert "ds_actor" not in response.cookies

    async def test_unknown_username(self, datasette, admin_account):
        response = await login(datasette, username="someone")
        assert response.status_code == 401

    async def test_not_configured(self, datasette):
        response = await login(datasette)
        assert response.status_code == 503

    async def test_logout_clears_cookie(self, datasette):
        response = await datasette.client.post("/api/admin/logout")

        assert response.status_code == 200
        assert response.json() == {"ok": True}
        assert "ds_actor" in response.headers["set-cookie"]


class TestLoginRateLimit:
    @pytest.fixture
    def limited(self, db_path, admin_account):
        return Datasette(
            [str(db_path)],
            config={
                "plugins": {
                    "datasette-book-club": {
                        "db_path": str(db_path),
                        "rules": {"login_rate_limit": {"max_attempts": 3, "window_seconds": 60}},
                    }
                }
            },
        )

    async def test_too_many_login_attempts(self, limited):
        for _ in range(3):
            assert (await login(limited, password="wrong")).status_code == 401

        response = await login(limited)

        assert response.status_code == 429
        assert response.json() == {"error": "Too many login attempts"}
        assert "retry-after" in response.headers


class TestAdminGate:
    @pytest.mark.parametrize(
        "method,path",
        [
            ("post", "/api/admin/vote-rounds"),
            ("post", "/api/admin/vote-rounds/1/close"),
            ("post", "/api/admin/vote-rounds/1/winner"),
            ("post", "/api/admin/suggestion-rounds/1/close"),
            ("get", "/api/admin/vote-results"),
            ("get", "/api/admin/latest-vote-books"),
            ("get", "/api/admin/suggestion-results"),
            ("get", "/api/admin/latest-suggestion-top-books"),
            ("patch", "/api/admin/suggestions/1"),
            ("delete", "/api/admin/suggestions/1"),
            ("get", "/api/admin/book-of-the-month"),
            ("post", "/api/admin/eventbrite-events"),
        ],
    )
    async def test_admin_routes_require_admin(self, datasette, admin_account, method, path):
        response = await getattr(datasette.client, method)(path)

        assert response.status_code == 401
        assert response.json() == {"error": "Admin authentication required"}

    async def test_non_admin_actor_refused(self, datasette, admin_account):
        cookie = datasette.sign({"a": {"id": "visitor"}}, "actor")

        response = await datasette.client.get(
            "/api/admin/vote-results", cookies={"ds_actor": cookie}
        )
        assert response.status_code == 401

    async def test_gate_open_without_admin_accounts(self, datasette):
        response = await datasette.client.get("/api/admin/vote-results")
        assert response.status_code == 200


class TestVoteRoundAdmin:
    async def test_create_round(self, datasette, admin_cookies, db):
        response = await datasette.client.post(
            "/api/admin/vote-rounds",
            json={
                "meetingDate": "2025-03-05",
                "closeVoteAt": "2030-03-01T09:00:00Z",
                "books": SHORTLIST,
                "voteAccessPassword": "club",
            },
            cookies=admin_cookies,
        )

        assert response.status_code == 201
        data = response.json()
        assert data["round"]["meetingDate"] == "2025-03-05"
        assert data["round"]["closeVoteAt"] == "2030-03-01T09:00:00+00:00"
        assert data["round"]["requiresPassword"] is True
        assert data["round"]["selectedBookIds"] == ["OL1W", "OL2W", "OL3W"]
        assert [b["title"] for b in data["books"]] == ["Middlemarch", "Persuasion", "Villette"]
        assert db.get_vote_round(data["round"]["id"]) is not None

    async def test_round_password_kept_as_typed(self, datasette, admin_cookies):
        response = await datasette.client.post(
            "/api/admin/vote-rounds",
            json={"meetingDate": "2025-03-05", "books": SHORTLIST, "voteAccessPassword": " club "},
            cookies=admin_cookies,
        )
        round_id = response.json()["round"]["id"]

        async def unlock(password):
            return await datasette.client.post(
                "/api/votes/verify-password", json={"roundId": round_id, "password": password}
            )

        assert (await unlock("club")).status_code == 401
        assert (await unlock(" club ")).status_code == 200

    async def test_duplicate_meeting_date(self, datasette, admin_cookies, make_vote_round):
        make_vote_round(meeting_date="2025-03-05")

        response = await datasette.client.post(
            "/api/admin/vote-rounds",
            json={"meetingDate": "2025-03-05", "books": SHORTLIST},
            cookies=admin_cookies,
        )

        assert response.status_code == 409
        assert response.json() == {"error": "A round for this meeting date already exists"}

    @pytest.mark.parametrize(
        "books",
        [
            SHORTLIST[:1],
            SHORTLIST + [{"externalId": "OL4W"}, {"externalId": "OL5W"}],
            [SHORTLIST[0], SHORTLIST[0]],
            "OL1W,OL2W",
        ],
    )
    async def test_invalid_shortlist(self, datasette, admin_cookies, books):
        response = await datasette.client.post(
            "/api/admin/vote-rounds",
            json={"meetingDate": "2025-03-05", "books": books},
            cookies=admin_cookies,
        )
        assert response.status_code == 400

    async def test_invalid_meeting_date(self, datasette, admin_cookies):
        response = await datasette.client.post(
            "/api/admin/vote-rounds",
            json={"meetingDate": "5 March", "books": SHORTLIST},
            cookies=admin_cookies,
        )

        assert response.status_code == 400
        assert response.json() == {"error": "meetingDate must be YYYY-MM-DD"}

    async def test_close_round(self, datasette, admin_cookies, make_vote_round, future):
        vote_round = make_vote_round(close_vote_at=future)

        response = await datasette.client.post(
            f"/api/admin/vote-rounds/{vote_round.id}/close", cookies=admin_cookies
        )

        assert response.status_code == 200
        assert response.json()["round"]["isOpen"] is False

        vote = await datasette.client.post(
            "/api/votes", json={"chosenBookExternalId": "OL1W", "voterKeyHash": "late"}
        )
        assert vote.status_code == 400

    async def test_close_already_closed_round_keeps_close_time(
        self, datasette, admin_cookies, make_vote_round, past
    ):
        vote_round = make_vote_round(close_vote_at=past)

        response = await datasette.client.post(
            f"/api/admin/vote-rounds/{vote_round.id}/close", cookies=admin_cookies
        )
        assert response.json()["round"]["closeVoteAt"] == past

    async def test_close_unknown_round(self, datasette, admin_cookies):
        response = await datasette.client.post(
            "/api/admin/vote-rounds/9/close", cookies=admin_cookies
        )
        assert response.status_code == 404

    async def test_set_winner(self, datasette, admin_cookies, db, make_vote_round):
        vote_round = make_vote_round()

        response = await datasette.client.post(
            f"/api/admin/vote-rounds/{vote_round.id}/winner",
            json={"winnerExternalId": "OL3W"},
            cookies=admin_cookies,
        )

        assert response.status_code == 200
        assert response.json()["round"]["winnerExternalId"] == "OL3W"
        assert db.get_vote_round(vote_round.id).winner_external_id == "OL3W"

    async def test_winner_must_be_shortlisted(self, datasette, admin_cookies, make_vote_round):
        vote_round = make_vote_round()

        response = await datasette.client.post(
            f"/api/admin/vote-rounds/{vote_round.id}/winner",
            json={"winnerExternalId": "OL9W"},
            cookies=admin_cookies,
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Winner must be one of the shortlisted books"}

    async def test_clear_winner(self, datasette, admin_cookies, db, make_vote_round):
        vote_round = make_vote_round()
        db.set_vote_winner(vote_round.id, "OL1W")

        response = await datasette.client.post(
            f"/api/admin/vote-rounds/{vote_round.id}/winner",
            json={"winnerExternalId": None},
            cookies=admin_cookies,
        )

        assert response.json()["round"]["winnerExternalId"] is None

    async def test_close_suggestion_round(
        self, datasette, admin_cookies, make_suggestion_round
    ):
        suggestion_round = make_suggestion_round()

        response = await datasette.client.post(
            f"/api/admin/suggestion-rounds/{suggestion_round.id}/close", cookies=admin_cookies
        )

        assert response.status_code == 200
        assert response.json()["round"]["isOpen"] is False
        status = (await datasette.client.get("/api/status")).json()
        assert status["suggestionsOpen"] is False


class TestResults:
    async def test_vote_results_include_every_round(
        self, datasette, admin_cookies, db, make_vote_round
    ):
        older = make_vote_round(meeting_date="2025-01-01")
        newer = make_vote_round(meeting_date="2025-02-01")
        db.add_vote(newer.id, "OL1W", "a")
        db.add_vote(newer.id, "OL2W", "b")

        rounds = (
            await datasette.client.get("/api/admin/vote-results", cookies=admin_cookies)
        ).json()["rounds"]

        assert [r["id"] for r in rounds] == [newer.id, older.id]
        assert rounds[0]["totalVotes"] == 2
        assert rounds[0]["isTie"] is True
        assert rounds[0]["leaderExternalIds"] == ["OL1W", "OL2W"]
        assert rounds[1]["totalVotes"] == 0
        assert rounds[1]["leaderExternalIds"] == []

    async def test_open_round_results_visible_to_admin(
        self, datasette, admin_cookies, db, make_vote_round
    ):
        vote_round = make_vote_round()
        db.add_vote(vote_round.id, "OL3W", "a")

        public = (await datasette.client.get("/api/votes")).json()
        admin = (
            await datasette.client.get("/api/admin/vote-results", cookies=admin_cookies)
        ).json()

        assert "results" not in public
        assert admin["rounds"][0]["results"][2]["voteCount"] == 1

    async def test_latest_vote_books_ranked(
        self, datasette, admin_cookies, db, make_vote_round
    ):
        vote_round = make_vote_round()
        db.add_vote(vote_round.id, "OL3W", "a")
        db.add_vote(vote_round.id, "OL3W", "b")
        db.add_vote(vote_round.id, "OL2W", "c")

        data = (
            await datasette.client.get("/api/admin/latest-vote-books", cookies=admin_cookies)
        ).json()

        assert [(b["externalId"], b["voteCount"]) for b in data["books"]] == [
            ("OL3W", 2),
            ("OL2W", 1),
            ("OL1W", 0),
        ]

    async def test_latest_vote_books_empty(self, datasette, admin_cookies):
        data = (
            await datasette.client.get("/api/admin/latest-vote-books", cookies=admin_cookies)
        ).json()
        assert data == {"round": None, "books": []}

    async def test_suggestion_results_show_pending_items(
        self, datasette, admin_cookies, db, make_suggestion_round
    ):
        suggestion_round = make_suggestion_round()
        db.add_suggestion(suggestion_round.id, "OL1W", "a", title="One", author="A")
        db.add_suggestion(
            suggestion_round.id, "manual:1", "b", title="Mine", author="B", is_manual_entry=True
        )

        rounds = (
            await datasette.client.get("/api/admin/suggestion-results", cookies=admin_cookies)
        ).json()["rounds"]

        assert len(rounds) == 1
        assert [r["bookExternalId"] for r in rounds[0]["results"]] == ["OL1W"]
        items = rounds[0]["items"]
        assert [i["bookExternalId"] for i in items] == ["OL1W", "manual:1"]
        assert items[1]["manualPendingApproval"] is True

    async def test_latest_suggestion_top_books(
        self, datasette, admin_cookies, db, make_suggestion_round
    ):
        make_suggestion_round()
        latest = make_suggestion_round()
        for i in range(8):
            db.add_suggestion(latest.id, f"OL{i}W", f"visitor-{i}", title=f"T{i}", author="A")
        db.add_suggestion(latest.id, "OL5W", "visitor-x", title="T5", author="A")

        data = (
            await datasette.client.get(
                "/api/admin/latest-suggestion-top-books", cookies=admin_cookies
            )
        ).json()

        assert data["roundId"] == latest.id
        assert len(data["books"]) == 6
        assert data["books"][0] == {
            "bookExternalId": "OL5W",
            "title": "T5",
            "author": "A",
            "suggestionCount": 2,
        }

    async def test_latest_suggestion_top_books_empty(self, datasette, admin_cookies):
        data = (
            await datasette.client.get(
                "/api/admin/latest-suggestion-top-books", cookies=admin_cookies
            )
        ).json()
        assert data == {"roundId": None, "books": []}


class TestModeration:
    async def test_approve_manual_entry(
        self, datasette, admin_cookies, db, make_suggestion_round
    ):
        suggestion_round = make_suggestion_round()
        suggestion = db.add_suggestion(
            suggestion_round.id, "manual:1", "a", title="T", author="A", is_manual_entry=True
        )

        response = await datasette.client.patch(
            f"/api/admin/suggestions/{suggestion.id}",
            json={"manualApproved": True},
            cookies=admin_cookies,
        )

        assert response.status_code == 200
        assert response.json()["suggestion"]["manualPendingApproval"] is False
        listed = (
            await datasette.client.get(f"/api/suggestions?roundId={suggestion_round.id}")
        ).json()
        assert len(listed["suggestions"]) == 1

    async def test_unapprove_manual_entry(
        self, datasette, admin_cookies, db, make_suggestion_round
    ):
        suggestion_round = make_suggestion_round()
        suggestion = db.add_suggestion(
            suggestion_round.id, "manual:1", "a", title="T", author="A", is_manual_entry=True
        )
        db.update_suggestion_flags(suggestion.id, manual_pending_approval=False)

        await datasette.client.patch(
            f"/api/admin/suggestions/{suggestion.id}",
            json={"manualApproved": False},
            cookies=admin_cookies,
        )

        assert db.get_suggestion(suggestion.id).manual_pending_approval is True

    async def test_approve_cover_override(
        self, datasette, admin_cookies, db, make_suggestion_round
    ):
        suggestion_round = make_suggestion_round()
        suggestion = db.add_suggestion(
            suggestion_round.id,
            "OL1W",
            "a",
            title="T",
            author="A",
            cover_url="https://example.com/c.jpg",
            cover_url_is_override=True,
        )

        response = await datasette.client.patch(
            f"/api/admin/suggestions/{suggestion.id}",
            json={"coverUrlApproved": True},
            cookies=admin_cookies,
        )

        assert response.json()["suggestion"]["coverUrlOverrideApproved"] is True
        listed = (
            await datasette.client.get(f"/api/suggestions?roundId={suggestion_round.id}")
        ).json()
        assert listed["suggestions"][0]["coverUrl"] == "https://example.com/c.jpg"

    async def test_flags_must_apply(self, datasette, admin_cookies, db, make_suggestion_round):
        suggestion_round = make_suggestion_round()
        suggestion = db.add_suggestion(suggestion_round.id, "OL1W", "a", title="T", author="A")
        path = f"/api/admin/suggestions/{suggestion.id}"

        manual = await datasette.client.patch(
            path, json={"manualApproved": True}, cookies=admin_cookies
        )
        cover = await datasette.client.patch(
            path, json={"coverUrlApproved": True}, cookies=admin_cookies
        )
        empty = await datasette.client.patch(path, json={}, cookies=admin_cookies)

        assert manual.json() == {"error": "Suggestion is not a manual entry"}
        assert cover.json() == {"error": "Suggestion has no cover override"}
        assert empty.status_code == 400

    async def test_delete(self, datasette, admin_cookies, db, make_suggestion_round):
        suggestion_round = make_suggestion_round()
        suggestion = db.add_suggestion(suggestion_round.id, "OL1W", "a", title="T", author="A")

        response = await datasette.client.delete(
            f"/api/admin/suggestions/{suggestion.id}", cookies=admin_cookies
        )

        assert response.status_code == 200
        assert db.get_suggestion(suggestion.id) is None

        again = await datasette.client.delete(
            f"/api/admin/suggestions/{suggestion.id}", cookies=admin_cookies
        )
        assert again.status_code == 404

    @pytest.mark.parametrize("suggestion_id", ["abc", "0", "%C2%B2"])
    async def test_invalid_suggestion_id(self, datasette, admin_cookies, suggestion_id):
        response = await datasette.client.delete(
            f"/api/admin/suggestions/{suggestion_id}", cookies=admin_cookies
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid suggestion id"}

    async def test_patch_unknown_suggestion(self, datasette, admin_cookies):
        response = await datasette.client.patch(
            "/api/admin/suggestions/55", json={"manualApproved": True}, cookies=admin_cookies
        )
        assert response.status_code == 404


class TestBookOfTheMonth:
    async def test_record_explicit_book(self, datasette, admin_cookies):
        response = await datasette.client.post(
            "/api/admin/book-of-the-month",
            json={
                "meetingDate": "2025-03-05",
                "externalId": "OL1W",
                "title": "Middlemarch",
                "author": "George Eliot",
                "blurb": "<p>Provincial life</p>",
            },
            cookies=admin_cookies,
        )

        assert response.status_code == 201
        book = response.json()["book"]
        assert book["title"] == "Middlemarch"
        assert book["blurb"] == "Provincial life"

        next_book = (await datasette.client.get("/api/nextbook")).json()
        assert next_book["book"]["externalId"] == "OL1W"

    async def test_missing_fields(self, datasette, admin_cookies):
        response = await datasette.client.post(
            "/api/admin/book-of-the-month",
            json={"meetingDate": "2025-03-05", "title": "Middlemarch"},
            cookies=admin_cookies,
        )

        assert response.status_code == 400
        assert response.json() == {
            "error": "Missing required fields: meetingDate, externalId, title, author"
        }

    async def test_from_round_winner(self, datasette, admin_cookies, db, make_vote_round):
        vote_round = make_vote_round(meeting_date="2025-04-02")
        db.set_vote_winner(vote_round.id, "OL2W")

        response = await datasette.client.post(
            "/api/admin/book-of-the-month",
            json={"fromVoteRoundId": vote_round.id},
            cookies=admin_cookies,
        )

        assert response.status_code == 201
        book = response.json()["book"]
        assert book["externalId"] == "OL2W"
        assert book["meetingDate"] == "2025-04-02"
        assert book["title"] == "Title OL2W"

    async def test_from_round_sole_leader(self, datasette, admin_cookies, db, make_vote_round):
        vote_round = make_vote_round()
        db.add_vote(vote_round.id, "OL3W", "a")
        db.add_vote(vote_round.id, "OL3W", "b")
        db.add_vote(vote_round.id, "OL1W", "c")

        response = await datasette.client.post(
            "/api/admin/book-of-the-month",
            json={"fromVoteRoundId": vote_round.id},
            cookies=admin_cookies,
        )

        assert response.json()["book"]["externalId"] == "OL3W"
        assert db.get_vote_round(vote_round.id).winner_external_id == "OL3W"

    async def test_from_tied_round(self, datasette, admin_cookies, db, make_vote_round):
        vote_round = make_vote_round()
        db.add_vote(vote_round.id, "OL1W", "a")
        db.add_vote(vote_round.id, "OL2W", "b")

        response = await datasette.client.post(
            "/api/admin/book-of-the-month",
            json={"fromVoteRoundId": vote_round.id},
            cookies=admin_cookies,
        )

        assert response.status_code == 409
        assert response.json() == {"error": "Vote is tied; choose a winner first"}

    async def test_from_round_without_votes(
        self, datasette, admin_cookies, make_vote_round
    ):
        vote_round = make_vote_round()

        response = await datasette.client.post(
            "/api/admin/book-of-the-month",
            json={"fromVoteRoundId": vote_round.id},
            cookies=admin_cookies,
        )
        assert response.status_code == 409

    async def test_get_current(self, datasette, admin_cookies, db):
        empty = await datasette.client.get("/api/admin/book-of-the-month", cookies=admin_cookies)
        assert empty.json() == {"book": None}

        db.add_book_of_the_month("2025-03-05", "OL1W", "Middlemarch", "George Eliot")
        current = await datasette.client.get(
            "/api/admin/book-of-the-month", cookies=admin_cookies
        )
        assert current.json()["book"]["title"] == "Middlemarch"

    async def test_other_methods_not_allowed(self, datasette, admin_cookies):
        response = await datasette.client.put(
            "/api/admin/book-of-the-month", json={}, cookies=admin_cookies
        )
        assert response.status_code == 405
