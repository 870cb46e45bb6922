import shutil
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from sqlalchemy import text as sql_text
from sqlalchemy.exc import DBAPIError, IntegrityError

from winning import repositories
from winning.db import Database
from winning.db_init import init_db
from winning.schemas import TaskType
from winning.workers.win_reconciler import reconcile_once


class SqliteTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tmpdir = tempfile.mkdtemp(prefix="winning-test-")
        self.db = Database(f"sqlite+aiosqlite:///{Path(self.tmpdir) / 'test.db'}")
        await init_db(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.dispose()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    async def scalar(self, sql: str, **params):
        async with self.db.sessionmaker() as session:
            return (await session.execute(sql_text(sql), params)).scalar()


class TestGoals(SqliteTestCase):
    async def test_goal_with_two_milestones_one_completed(self) -> None:
        goal = await repositories.create_goal(self.db, "u1", {"title": "Run a marathon"})
        first = await repositories.create_milestone(self.db, "u1", goal["id"], {"title": "10k"})
        await repositories.create_milestone(self.db, "u1", goal["id"], {"title": "Half"})
        done = await repositories.set_milestone_completed(self.db, "u1", first["id"], True)
        self.assertTrue(done["completed"])
        self.assertIsNotNone(done["completed_at"])

        goals = await repositories.list_goals(self.db, ["u1"])
        self.assertEqual(len(goals), 1)
        self.assertEqual(goals[0]["horizon"], "long-term")
        self.assertEqual([m["title"] for m in goals[0]["milestones"]], ["10k", "Half"])
        self.assertEqual([m["completed"] for m in goals[0]["milestones"]], [True, False])

        wins = await repositories.list_wins(self.db, ["u1"])
        self.assertEqual(len(wins), 1)
        self.assertEqual(wins[0]["category"], "Milestone")
        self.assertEqual(wins[0]["goal_title"], "Run a marathon")
        self.assertEqual(wins[0]["milestone_title"], "10k")

    async def test_uncompleting_milestone_clears_timestamp_and_win(self) -> None:
        goal = await repositories.create_goal(self.db, "u1", {"title": "Learn Go"})
        milestone = await repositories.create_milestone(self.db, "u1", goal["id"], {"title": "Tour"})
        await repositories.set_milestone_completed(self.db, "u1", milestone["id"], True)
        await repositories.set_milestone_completed(self.db, "u1", milestone["id"], True)
        self.assertEqual(len(await repositories.list_wins(self.db, ["u1"])), 1)

        undone = await repositories.set_milestone_completed(self.db, "u1", milestone["id"], False)
        self.assertFalse(undone["completed"])
        self.assertIsNone(undone["completed_at"])
        self.assertEqual(await repositories.list_wins(self.db, ["u1"]), [])

    async def test_goals_are_newest_first_and_scoped_to_owner(self) -> None:
        await repositories.create_goal(self.db, "u1", {"title": "Older"})
        await repositories.create_goal(self.db, "u1", {"title": "Newer"})
        await repositories.create_goal(self.db, "u2", {"title": "Someone else"})
        titles = [goal["title"] for goal in await repositories.list_goals(self.db, ["u1"])]
        self.assertEqual(titles, ["Newer", "Older"])

    async def test_other_users_goal_is_not_found(self) -> None:
        goal = await repositories.create_goal(self.db, "u1", {"title": "Mine"})
        with self.assertRaises(LookupError):
            await repositories.update_goal(self.db, "u2", goal["id"], {"title": "Stolen"})

    async def test_invalid_horizon_and_blank_title(self) -> None:
        with self.assertRaises(ValueError):
            await repositories.create_goal(self.db, "u1", {"title": "X", "horizon": "someday"})
        with self.assertRaises(ValueError):
            await repositories.create_goal(self.db, "u1", {"title": "   "})

    async def test_delete_goal_cascades_derived_wins_only(self) -> None:
        goal = await repositories.create_goal(self.db, "u1", {"title": "Ship it"})
        milestone = await repositories.create_milestone(self.db, "u1", goal["id"], {"title": "Beta"})
        await repositories.set_milestone_completed(self.db, "u1", milestone["id"], True)
        await repositories.set_goal_completed(self.db, "u1", goal["id"], True)
        manual = await repositories.create_manual_win(self.db, "u1", {"title": "Told a friend", "goal_id": goal["id"]})

        await repositories.delete_goal(self.db, "u1", goal["id"])

        self.assertEqual(await repositories.list_goals(self.db, ["u1"]), [])
        self.assertEqual(await self.scalar("SELECT COUNT(*) FROM milestones"), 0)
        wins = await repositories.list_wins(self.db, ["u1"])
        self.assertEqual([win["id"] for win in wins], [manual["id"]])
        self.assertIsNone(wins[0]["goal_id"])
        self.assertEqual(wins[0]["category"], "General")


class TestHabits(SqliteTestCase):
    async def test_toggle_on_then_off_leaves_no_row(self) -> None:
        habit = await repositories.create_habit(self.db, "u1", "Read", "2024-03")
        await repositories.set_habit_check(self.db, "u1", habit["id"], "2024-03-05", True)
        await repositories.set_habit_check(self.db, "u1", habit["id"], "2024-03-05", True)
        self.assertEqual(await self.scalar("SELECT COUNT(*) FROM habit_checks"), 1)

        await repositories.set_habit_check(self.db, "u1", habit["id"], "2024-03-05", False)
        self.assertEqual(await self.scalar("SELECT COUNT(*) FROM habit_checks"), 0)

    async def test_name_is_normalised(self) -> None:
        habit = await repositories.create_habit(self.db, "u1", "  Drink    water  ", "2024-03")
        self.assertEqual(habit["name"], "Drink water")
        long_habit = await repositories.create_habit(self.db, "u1", "x" * 80, "2024-03")
        self.assertEqual(len(long_habit["name"]), 60)
        with self.assertRaises(ValueError):
            await repositories.create_habit(self.db, "u1", "   ", "2024-03")

    async def test_monthly_limit(self) -> None:
        await repositories.create_habit(self.db, "u1", "One", "2024-03", limit=2)
        await repositories.create_habit(self.db, "u1", "Two", "2024-03", limit=2)
        with self.assertRaises(ValueError):
            await repositories.create_habit(self.db, "u1", "Three", "2024-03", limit=2)
        await repositories.create_habit(self.db, "u1", "Next month", "2024-04", limit=2)

    async def test_delete_cascades_checks(self) -> None:
        habit = await repositories.create_habit(self.db, "u1", "Walk", "2024-03")
        await repositories.set_habit_check(self.db, "u1", habit["id"], "2024-03-01", True)
        await repositories.delete_habit(self.db, "u1", habit["id"])
        self.assertEqual(await self.scalar("SELECT COUNT(*) FROM habit_checks"), 0)
        self.assertEqual(await repositories.list_habits(self.db, ["u1"], "2024-03"), [])

    async def test_check_outside_month_rejected(self) -> None:
        habit = await repositories.create_habit(self.db, "u1", "Walk", "2024-03")
        with self.assertRaises(ValueError):
            await repositories.set_habit_check(self.db, "u1", habit["id"], "2024-04-01", True)

    async def test_batched_listing_groups_checks(self) -> None:
        first = await repositories.create_habit(self.db, "u1", "Read", "2024-03")
        second = await repositories.create_habit(self.db, "u2", "Run", "2024-03")
        await repositories.set_habit_check(self.db, "u2", second["id"], "2024-03-02", True)
        habits = await repositories.list_habits(self.db, ["u1", "u2"], "2024-03")
        by_id = {habit["id"]: habit for habit in habits}
        self.assertEqual(by_id[first["id"]]["checks"], [])
        self.assertEqual(by_id[second["id"]]["checks"], [{"date": "2024-03-02", "completed": True}])


class TestCirclesAndInvites(SqliteTestCase):
    async def test_create_circle_adds_owner(self) -> None:
        circle = await repositories.create_circle(self.db, "owner", " Book club ")
        self.assertEqual(circle["name"], "Book club")
        membership = await repositories.require_membership(self.db, circle["id"], "owner", role="owner")
        self.assertEqual(membership["role"], "owner")
        memberships = await repositories.list_memberships(self.db, "owner")
        self.assertEqual([(m["circle_id"], m["name"]) for m in memberships], [(circle["id"], "Book club")])

    async def test_accept_invite_creates_membership_once(self) -> None:
        circle = await repositories.create_circle(self.db, "owner", "Crew")
        invite = await repositories.create_invite(self.db, circle["id"], "owner")
        circle_id = await repositories.accept_invite(self.db, invite["token"], "friend")
        self.assertEqual(circle_id, circle["id"])
        members = await repositories.list_circle_members(self.db, circle["id"])
        self.assertEqual({m["user_id"]: m["role"] for m in members}, {"owner": "owner", "friend": "member"})

        with self.assertRaises(ValueError):
            await repositories.accept_invite(self.db, invite["token"], "stranger")
        with self.assertRaises(PermissionError):
            await repositories.require_membership(self.db, circle["id"], "stranger")

    async def test_expired_invite_creates_no_member(self) -> None:
        circle = await repositories.create_circle(self.db, "owner", "Crew")
        invite = await repositories.create_invite(self.db, circle["id"], "owner", ttl_hours=72)
        later = datetime.now(timezone.utc) + timedelta(hours=73)
        with self.assertRaises(ValueError):
            await repositories.accept_invite(self.db, invite["token"], "late", now=later)
        self.assertEqual(
            await self.scalar("SELECT COUNT(*) FROM circle_members WHERE user_id = :user_id", user_id="late"),
            0,
        )
        self.assertIsNone(
            await self.scalar("SELECT used_at FROM circle_invites WHERE token = :token", token=invite["token"])
        )

    async def test_unknown_token_rejected(self) -> None:
        with self.assertRaises(ValueError):
            await repositories.accept_invite(self.db, "nope", "someone")

    async def test_existing_member_does_not_consume_token(self) -> None:
        circle = await repositories.create_circle(self.db, "owner", "Crew")
        invite = await repositories.create_invite(self.db, circle["id"], "owner")
        self.assertEqual(await repositories.accept_invite(self.db, invite["token"], "owner"), circle["id"])
        self.assertEqual(await repositories.accept_invite(self.db, invite["token"], "friend"), circle["id"])

    async def test_only_owner_creates_invites(self) -> None:
        circle = await repositories.create_circle(self.db, "owner", "Crew")
        invite = await repositories.create_invite(self.db, circle["id"], "owner")
        await repositories.accept_invite(self.db, invite["token"], "friend")
        with self.assertRaises(PermissionError):
            await repositories.create_invite(self.db, circle["id"], "friend")
        with self.assertRaises(LookupError):
            await repositories.create_invite(self.db, "missing", "owner")


class TestTasksAndWins(SqliteTestCase):
    async def test_toggle_todo_maintains_win(self) -> None:
        task = await repositories.create_task(self.db, "u1", TaskType.TASK, {"title": "Email Sam", "date": "2024-03-05"})
        self.assertEqual(task.type, "task")
        self.assertEqual(task.status, "planned")

        done = await repositories.toggle_todo(self.db, "u1", task.id)
        self.assertTrue(done.is_done)
        wins = await repositories.list_wins(self.db, ["u1"])
        self.assertEqual([(win["title"], win["category"], win["source"]) for win in wins], [("Email Sam", "Task", "task")])

        reopened = await repositories.toggle_todo(self.db, "u1", task.id)
        self.assertEqual(reopened.status, "planned")
        self.assertEqual(await repositories.list_wins(self.db, ["u1"]), [])

    async def test_week_item_status_win_description(self) -> None:
        item = await repositories.create_task(
            self.db,
            "u1",
            TaskType.WEEK,
            {"title": "Plan trip", "date": "2024-03-06", "description": "book flights"},
        )
        await repositories.set_task_status(self.db, "u1", item.id, "in_progress", ["week"])
        self.assertEqual(await repositories.list_wins(self.db, ["u1"]), [])
        await repositories.set_task_status(self.db, "u1", item.id, "done", ["week"])
        wins = await repositories.list_wins(self.db, ["u1"])
        self.assertEqual(wins[0]["description"], "Completed weekly task: book flights")
        await repositories.set_task_status(self.db, "u1", item.id, "open", ["week"])
        self.assertEqual(await repositories.list_wins(self.db, ["u1"]), [])

    async def test_delete_task_removes_its_wins(self) -> None:
        task = await repositories.create_task(self.db, "u1", TaskType.TASK, {"title": "Call mom", "date": "2024-03-05"})
        await repositories.toggle_todo(self.db, "u1", task.id)
        await repositories.delete_task(self.db, "u1", task.id)
        self.assertEqual(await repositories.list_wins(self.db, ["u1"]), [])
        with self.assertRaises(LookupError):
            await repositories.get_task(self.db, "u1", task.id)

    async def test_legacy_open_status_reads_as_planned(self) -> None:
        task = await repositories.create_task(self.db, "u1", TaskType.TASK, {"title": "Old", "date": "2024-03-05"})
        async with self.db.sessionmaker() as session:
            await session.execute(sql_text("UPDATE tasks SET status = 'open' WHERE id = :id"), {"id": task.id})
            await session.commit()
        self.assertEqual((await repositories.get_task(self.db, "u1", task.id)).status, "planned")

    async def test_priority_update_and_insert(self) -> None:
        self.assertIsNone(await repositories.save_priority(self.db, "u1", "2024-03-05", "   "))
        created = await repositories.save_priority(self.db, "u1", "2024-03-05", "  Finish report ")
        self.assertEqual(created.title, "Finish report")
        self.assertEqual(created.type, "priority")
        cleared = await repositories.save_priority(self.db, "u1", "2024-03-05", "")
        self.assertEqual(cleared.id, created.id)
        self.assertEqual(cleared.title, "")
        self.assertEqual(await self.scalar("SELECT COUNT(*) FROM tasks WHERE type = 'priority'"), 1)

    async def test_open_todo_count(self) -> None:
        first = await repositories.create_task(self.db, "u1", TaskType.TASK, {"title": "A", "date": "2024-03-05"})
        await repositories.create_task(self.db, "u1", TaskType.TASK, {"title": "B", "date": "2024-03-05"})
        await repositories.create_task(self.db, "u1", TaskType.EVENT, {"title": "Party", "date": "2024-03-05"})
        await repositories.toggle_todo(self.db, "u1", first.id)
        self.assertEqual(await repositories.count_open_todos(self.db, "u1", "2024-03-05"), 1)

    async def test_second_priority_for_same_day_is_rejected(self) -> None:
        insert = sql_text(
            "INSERT INTO tasks (id, user_id, title, type, date, priority, status, created_at) "
            "VALUES (:id, :user_id, :title, 'priority', :date, 'high', 'planned', :created_at)"
        )
        row = {"user_id": "u1", "date": "2024-03-05", "created_at": "2024-03-05T08:00:00+00:00"}
        async with self.db.sessionmaker() as session:
            await session.execute(insert, {**row, "id": "p1", "title": "First"})
            await session.commit()
        async with self.db.sessionmaker() as session:
            with self.assertRaises(IntegrityError):
                await session.execute(insert, {**row, "id": "p2", "title": "Second"})
        async with self.db.sessionmaker() as session:
            await session.execute(insert, {**row, "id": "p3", "title": "Other user", "user_id": "u2"})
            await session.execute(insert, {**row, "id": "p4", "title": "Next day", "date": "2024-03-06"})
            await session.commit()
        self.assertEqual(await self.scalar("SELECT COUNT(*) FROM tasks WHERE type = 'priority'"), 3)

    async def test_unknown_stored_priority_reads_as_medium(self) -> None:
        task = await repositories.create_task(self.db, "u1", TaskType.TASK, {"title": "Old", "date": "2024-03-05"})
        async with self.db.sessionmaker() as session:
            await session.execute(sql_text("UPDATE tasks SET priority = 'urgent' WHERE id = :id"), {"id": task.id})
            await session.commit()
        self.assertEqual((await repositories.get_task(self.db, "u1", task.id)).priority, "medium")

    async def test_manual_win_and_listing_order(self) -> None:
        goal = await repositories.create_goal(self.db, "u1", {"title": "Fitness"})
        await repositories.create_manual_win(self.db, "u1", {"title": "First"})
        second = await repositories.create_manual_win(self.db, "u1", {"title": "Second", "goal_id": goal["id"]})
        wins = await repositories.list_wins(self.db, ["u1"])
        self.assertEqual([win["title"] for win in wins], ["Second", "First"])
        self.assertEqual(second["category"], "Goal")
        await repositories.delete_win(self.db, "u1", second["id"])
        with self.assertRaises(LookupError):
            await repositories.delete_win(self.db, "u1", second["id"])


class TestNotesAndReviews(SqliteTestCase):
    async def test_day_notes_preserve_sibling_field(self) -> None:
        await repositories.patch_day_notes(self.db, "u1", "2024-03-05", {"schedule": "9am gym"})
        notes = await repositories.patch_day_notes(self.db, "u1", "2024-03-05", {"notes": "felt great"})
        self.assertEqual(notes, {"schedule": "9am gym", "notes": "felt great"})
        with self.assertRaises(ValueError):
            await repositories.patch_day_notes(self.db, "u1", "2024-03-05", {})

    async def test_month_notes_write_one_field(self) -> None:
        await repositories.set_month_note(self.db, "u1", "2024-03", "goals", "Save money")
        notes = await repositories.set_month_note(self.db, "u1", "2024-03", "review", "Went well")
        self.assertEqual(notes, {"goals": "Save money", "review": "Went well"})
        self.assertEqual(await repositories.get_month_notes(self.db, "u1", "2024-02"), {"goals": "", "review": ""})

    async def test_review_upsert(self) -> None:
        await repositories.save_review(self.db, "u1", "2024-03-04", {"achievements": "a", "top_outcomes": "x\ny"})
        review = await repositories.save_review(self.db, "u1", "2024-03-04", {"achievements": "b", "top_outcomes": "x\ny"})
        self.assertEqual(review["achievements"], "b")
        self.assertEqual(review["top_outcomes"], "x\ny")
        self.assertEqual(await self.scalar("SELECT COUNT(*) FROM reviews"), 1)

    async def test_review_retries_with_array_on_malformed_array(self) -> None:
        error = DBAPIError("INSERT", {}, Exception('malformed array literal: "first"'))
        with mock.patch.object(repositories, "_upsert_review", side_effect=[error, None]) as upsert:
            await repositories.save_review(self.db, "u1", "2024-03-04", {"top_outcomes": "first\r\nsecond\n"})
        self.assertEqual(upsert.call_count, 2)
        retry_fields = upsert.call_args_list[1].args[3]
        self.assertEqual(retry_fields["top_outcomes"], ["first", "second"])

    async def test_review_retries_when_driver_rejects_text_for_array(self) -> None:
        error = DBAPIError(
            "INSERT",
            {},
            Exception(
                "invalid input for query argument $7: 'one\\ntwo' "
                "(a sized iterable container expected (got type 'str'))"
            ),
        )
        with mock.patch.object(repositories, "_upsert_review", side_effect=[error, None]) as upsert:
            await repositories.save_review(self.db, "u1", "2024-03-04", {"top_outcomes": "one\ntwo"})
        self.assertEqual(upsert.call_count, 2)
        self.assertEqual(upsert.call_args_list[1].args[3]["top_outcomes"], ["one", "two"])

    async def test_review_does_not_retry_other_errors(self) -> None:
        error = DBAPIError("INSERT", {}, Exception("connection reset"))
        with mock.patch.object(repositories, "_upsert_review", side_effect=[error, None]) as upsert:
            with self.assertRaises(DBAPIError):
                await repositories.save_review(self.db, "u1", "2024-03-04", {"top_outcomes": "a"})
        self.assertEqual(upsert.call_count, 1)

    def test_array_values_are_joined_on_read(self) -> None:
        payload = repositories._review_payload({"top_outcomes": ["a", "b"], "lessons": None})
        self.assertEqual(payload["top_outcomes"], "a\nb")
        self.assertEqual(payload["lessons"], "")


class TestRoutines(SqliteTestCase):
    async def test_ensure_is_idempotent(self) -> None:
        await repositories.ensure_routines(self.db, "u1")
        routines = await repositories.ensure_routines(self.db, "u1")
        self.assertEqual(set(routines), {"morning", "evening"})
        self.assertEqual(await self.scalar("SELECT COUNT(*) FROM routines"), 2)

    async def test_steps_save_move_and_complete(self) -> None:
        routine = await repositories.save_routine_steps(
            self.db,
            "u1",
            "morning",
            [{"text": "Stretch", "durationMinutes": 5}, {"text": "Journal"}],
        )
        ids = [step["id"] for step in routine["steps"]]
        self.assertTrue(all(ids))

        moved = await repositories.move_routine_step(self.db, "u1", "morning", ids[1], "up")
        self.assertEqual([step["text"] for step in moved["steps"]], ["Journal", "Stretch"])
        unchanged = await repositories.move_routine_step(self.db, "u1", "morning", ids[1], "up")
        self.assertEqual([step["text"] for step in unchanged["steps"]], ["Journal", "Stretch"])

        done = await repositories.set_routine_step_completion(self.db, "u1", "morning", ids[0], "2024-03-05", True)
        stretch = next(step for step in done["steps"] if step["id"] == ids[0])
        self.assertEqual(stretch["completedDates"], ["2024-03-05"])
        undone = await repositories.set_routine_step_completion(self.db, "u1", "morning", ids[0], "2024-03-05", False)
        stretch = next(step for step in undone["steps"] if step["id"] == ids[0])
        self.assertEqual(stretch["completedDates"], [])

    async def test_blank_step_rejected(self) -> None:
        with self.assertRaises(ValueError):
            await repositories.save_routine_steps(self.db, "u1", "evening", [{"text": "  "}])

    def test_move_step_unknown_id(self) -> None:
        with self.assertRaises(LookupError):
            repositories.move_step([{"id": "a"}], "b", "down")


class TestWinReconciler(SqliteTestCase):
    async def test_restores_missing_and_removes_stale_wins(self) -> None:
        task = await repositories.create_task(self.db, "u1", TaskType.TASK, {"title": "Legacy", "date": "2024-03-05"})
        manual = await repositories.create_manual_win(self.db, "u1", {"title": "Kept"})
        async with self.db.sessionmaker() as session:
            await session.execute(sql_text("UPDATE tasks SET status = 'done' WHERE id = :id"), {"id": task.id})
            await session.commit()

        result = await reconcile_once(self.db)
        self.assertEqual(result["created"], 1)
        self.assertEqual(await self.scalar("SELECT COUNT(*) FROM wins WHERE task_id = :id", id=task.id), 1)

        async with self.db.sessionmaker() as session:
            await session.execute(sql_text("UPDATE tasks SET status = 'planned' WHERE id = :id"), {"id": task.id})
            await session.commit()
        result = await reconcile_once(self.db)
        self.assertEqual(result["removed"], 1)
        wins = await repositories.list_wins(self.db, ["u1"])
        self.assertEqual([win["id"] for win in wins], [manual["id"]])

    async def test_consistent_database_is_left_alone(self) -> None:
        goal = await repositories.create_goal(self.db, "u1", {"title": "Goal"})
        await repositories.set_goal_completed(self.db, "u1", goal["id"], True)
        self.assertEqual(await reconcile_once(self.db), {"created": 0, "removed": 0, "failed": 0})


if __name__ == "__main__":
    unittest.main(verbosity=2)
