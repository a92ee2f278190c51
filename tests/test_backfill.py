import unittest

from store_helpers import memory_session_factory, raw_issue, seed_issues


class BackfillPersonRefsTests(unittest.TestCase):
    def setUp(self):
        from issuesync.models import Person

        self.db = memory_session_factory()()
        self.alice = Person(name="Alice", external_id=1)
        self.bob = Person(name="Bob", external_id=2)
        self.carol = Person(name="Carol", external_id=3)
        self.db.add_all([self.alice, self.bob, self.carol])
        self.db.commit()

        seed_issues(
            self.db,
            raw_issue(10, user=(1, "alice"), assignees=[(2, "bob"), (99, "stranger")]),
            raw_issue(
                11,
                state="closed",
                closed_at="2024-01-05T00:00:00Z",
                user=(99, "stranger"),
                assignees=[(1, "alice")],
                closed_by=(3, "carol"),
            ),
        )

    def tearDown(self):
        self.db.close()

    def test_stamps_authors_assignees_and_closers(self):
        from issuesync.models import Issue
        from issuesync.services.backfill import backfill_person_refs

        stats = backfill_person_refs(self.db, batch_size=2)

        self.assertEqual(stats["batches"], 2)
        self.assertEqual(stats["persons"], 3)
        self.assertEqual(stats["users"], 1)
        self.assertEqual(stats["assignees"], 2)
        self.assertEqual(stats["closed_by"], 1)

        self.db.expire_all()
        first = self.db.query(Issue).filter(Issue.external_id == 10).one()
        second = self.db.query(Issue).filter(Issue.external_id == 11).one()
        self.assertEqual(first.user_person_id, self.alice.id)
        self.assertEqual([a.person_id for a in first.assignees], [self.bob.id, None])
        self.assertIsNone(second.user_person_id)
        self.assertEqual(second.closed_by_person_id, self.carol.id)
        self.assertEqual(second.assignees[0].person_id, self.alice.id)

    def test_second_run_changes_nothing(self):
        from issuesync.services.backfill import backfill_person_refs

        backfill_person_refs(self.db)
        again = backfill_person_refs(self.db)

        self.assertEqual(again["users"] + again["assignees"] + again["closed_by"], 0)


if __name__ == "__main__":
    unittest.main()
