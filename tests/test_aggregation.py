import unittest
from datetime import datetime

from store_helpers import memory_session_factory, raw_issue, seed_issues


class AggregationTests(unittest.TestCase):
    def setUp(self):
        self.db = memory_session_factory()()

    def tearDown(self):
        self.db.close()

    def _predicate(self, default_to_open=True, **params):
        from issuesync.services.filters import FilterCriteria, build_query

        return build_query(self.db, FilterCriteria(**params), default_to_open=default_to_open)

    def test_assignee_stats_end_to_end(self):
        from issuesync.models import Person
        from issuesync.services.aggregation import assignee_stats

        self.db.add(Person(name="Alice Example", external_id=1))
        self.db.commit()
        seed_issues(
            self.db,
            raw_issue(1, assignees=[(1, "alice")], labels=["bug"]),
            raw_issue(2, state="closed", closed_at="2024-01-05T00:00:00Z", assignees=[(1, "alice")]),
        )

        result = assignee_stats(self.db, self._predicate(default_to_open=False))

        self.assertEqual(len(result["data"]), 1)
        row = result["data"][0]
        self.assertEqual(row["open_issues"], 1)
        self.assertEqual(row["closed_issues"], 1)
        self.assertEqual(row["total_issues"], 2)
        self.assertEqual(row["employee"]["name"], "Alice Example")
        self.assertEqual(row["employee"]["github_id"], 1)

        breakdown = {entry["state"]: entry for entry in row["employee"]["counts_by_state_and_label"]}
        self.assertEqual(breakdown["open"]["state_count"], 1)
        self.assertEqual(breakdown["open"]["labels"], [{"label": "bug", "count": 1}])
        self.assertEqual(breakdown["closed"]["labels"], [{"label": None, "count": 1}])
        self.assertEqual(result["pagination"]["total_count"], 1)

    def test_assignee_stats_name_falls_back_to_login(self):
        from issuesync.services.aggregation import assignee_stats

        seed_issues(self.db, raw_issue(1, assignees=[(7, "ghost")]))
        row = assignee_stats(self.db, self._predicate(default_to_open=False))["data"][0]
        self.assertEqual(row["employee"]["name"], "ghost")

    def test_assignee_filter_is_reapplied_after_unwind(self):
        from issuesync.services.aggregation import assignee_stats

        seed_issues(self.db, raw_issue(1, assignees=[(1, "alice"), (2, "bob")]))

        result = assignee_stats(self.db, self._predicate(default_to_open=False, assignee_ids=[1]))
        self.assertEqual([r["employee"]["login"] for r in result["data"]], ["alice"])

    def test_assignee_stats_sorting_and_tie_break(self):
        from issuesync.services.aggregation import assignee_stats

        seed_issues(
            self.db,
            raw_issue(1, assignees=[(3, "carol")]),
            raw_issue(2, assignees=[(1, "alice")]),
            raw_issue(3, assignees=[(2, "bob")]),
            raw_issue(4, assignees=[(2, "bob")]),
        )
        predicate = self._predicate(default_to_open=False)

        by_total = assignee_stats(self.db, predicate)["data"]
        # bob leads; carol and alice tie and keep first-seen order.
        self.assertEqual([r["employee"]["login"] for r in by_total], ["bob", "carol", "alice"])

        by_name = assignee_stats(self.db, predicate, sort_by="name", sort_order="asc")["data"]
        self.assertEqual([r["employee"]["login"] for r in by_name], ["alice", "bob", "carol"])

    def test_sort_accepts_camel_case_and_rejects_unknown_fields(self):
        from issuesync.errors import ValidationFailure
        from issuesync.services.aggregation import assignee_stats, list_issues

        seed_issues(
            self.db,
            raw_issue(1, assignees=[(1, "alice")]),
            raw_issue(2, state="closed", closed_at="2024-01-05T00:00:00Z", assignees=[(2, "bob")]),
            raw_issue(3, state="closed", closed_at="2024-01-06T00:00:00Z", assignees=[(2, "bob")]),
        )
        predicate = self._predicate(default_to_open=False)

        by_open = assignee_stats(self.db, predicate, sort_by="openIssues")["data"]
        self.assertEqual([r["employee"]["login"] for r in by_open], ["alice", "bob"])
        by_closed = assignee_stats(self.db, predicate, sort_by="closedIssues", sort_order="asc")["data"]
        self.assertEqual([r["employee"]["login"] for r in by_closed], ["alice", "bob"])

        with self.assertRaises(ValidationFailure) as ctx:
            assignee_stats(self.db, predicate, sort_by="karma")
        self.assertEqual(ctx.exception.errors[0]["field"], "sort_by")
        with self.assertRaises(ValidationFailure):
            list_issues(self.db, predicate, sort_by="number", sort_order="sideways")

    def test_assignee_stats_pagination_counts_all_assignees(self):
        from issuesync.services.aggregation import assignee_stats

        seed_issues(self.db, *[raw_issue(i, assignees=[(i, f"user{i}")]) for i in range(1, 6)])

        page = assignee_stats(self.db, self._predicate(default_to_open=False), page=2, limit=2)
        self.assertEqual(len(page["data"]), 2)
        self.assertEqual(
            page["pagination"],
            {
                "current_page": 2,
                "total_pages": 3,
                "total_count": 5,
                "limit": 2,
                "has_next_page": True,
                "has_prev_page": True,
            },
        )

    def test_list_issues_total_count_is_independent_of_page(self):
        from issuesync.services.aggregation import list_issues

        seed_issues(self.db, *[raw_issue(i) for i in range(1, 8)])
        predicate = self._predicate()

        seen = []
        for page in (1, 2, 3):
            result = list_issues(self.db, predicate, page=page, limit=3, sort_by="number", sort_order="asc")
            self.assertEqual(result["pagination"]["total_count"], 7)
            self.assertEqual(result["pagination"]["total_pages"], 3)
            seen.extend(issue.number for issue in result["data"])

        self.assertEqual(seen, [1, 2, 3, 4, 5, 6, 7])

    def test_empty_team_filter_matches_nothing(self):
        from issuesync.models import Person
        from issuesync.services.aggregation import list_issues

        lead = Person(name="Lead", external_id=50)
        self.db.add(lead)
        self.db.commit()
        seed_issues(self.db, raw_issue(1, assignees=[(1, "alice")]), raw_issue(2))

        result = list_issues(self.db, self._predicate(team_lead_id=lead.id))
        self.assertEqual(result["data"], [])
        self.assertEqual(result["pagination"]["total_count"], 0)

    def test_module_and_id_intersection_filters_issues(self):
        from issuesync.models import Person, PersonModule
        from issuesync.services.aggregation import list_issues

        people = [Person(name=f"P{i}", external_id=i) for i in (1, 2, 3)]
        self.db.add_all(people)
        self.db.flush()
        self.db.add_all([PersonModule(person_id=p.id, module="core") for p in people])
        self.db.commit()
        seed_issues(self.db, *[raw_issue(i, assignees=[(i, f"user{i}")]) for i in (1, 2, 3, 4)])

        predicate = self._predicate(modules=["core"], assignee_ids=[2, 3, 4])
        result = list_issues(self.db, predicate, sort_by="number", sort_order="asc")
        self.assertEqual([i.number for i in result["data"]], [2, 3])

    def test_list_issues_defaults_to_open_and_all_lifts_it(self):
        from issuesync.services.aggregation import list_issues

        seed_issues(
            self.db,
            raw_issue(1),
            raw_issue(2, state="closed", closed_at="2024-01-05T00:00:00Z"),
        )

        self.assertEqual(list_issues(self.db, self._predicate())["pagination"]["total_count"], 1)
        self.assertEqual(
            list_issues(self.db, self._predicate(state="all"))["pagination"]["total_count"], 2
        )

    def test_list_issues_metrics(self):
        from issuesync.services.aggregation import list_issues

        seed_issues(
            self.db,
            raw_issue(1, created_at="2024-01-01T00:00:00Z", updated_at="2024-01-02T00:00:00Z", labels=["bug"]),
            raw_issue(2, created_at="2024-03-01T00:00:00Z", updated_at="2024-03-09T00:00:00Z"),
            raw_issue(
                3,
                state="closed",
                created_at="2024-01-01T00:00:00Z",
                closed_at="2024-01-11T00:00:00Z",
                labels=["bug"],
            ),
        )
        now = datetime(2024, 3, 11)

        open_only = list_issues(self.db, self._predicate(), now=now)["metrics"]
        self.assertEqual(open_only["total_count"], 2)
        self.assertEqual(open_only["stale_count"], 1)
        # (70 + 10) / 2
        self.assertEqual(open_only["average_age_in_days"], 40)
        self.assertNotIn("average_resolution_time_in_days", open_only)

        everything = list_issues(self.db, self._predicate(state="all"), now=now)["metrics"]
        self.assertEqual(everything["average_resolution_time_in_days"], 10)
        by_state = {entry["state"]: entry for entry in everything["counts_by_state_and_label"]}
        self.assertEqual(by_state["open"]["state_count"], 2)
        self.assertEqual(
            by_state["open"]["labels"],
            [{"label": None, "count": 1}, {"label": "bug", "count": 1}],
        )
        self.assertEqual(by_state["closed"]["labels"], [{"label": "bug", "count": 1}])

        closed_only = list_issues(self.db, self._predicate(state="closed"), now=now)["metrics"]
        self.assertNotIn("average_age_in_days", closed_only)

    def test_summary_counts_all_states(self):
        from issuesync.services.aggregation import summary

        seed_issues(
            self.db,
            raw_issue(1),
            raw_issue(2),
            raw_issue(3, state="closed", closed_at="2024-01-05T00:00:00Z"),
        )

        self.assertEqual(
            summary(self.db, self._predicate(default_to_open=False)),
            {"total_issues": 3, "open_issues": 2, "closed_issues": 1},
        )

    def test_invalid_page_is_rejected_and_limit_capped(self):
        from issuesync.errors import ValidationFailure
        from issuesync.services.aggregation import list_issues

        with self.assertRaises(ValidationFailure):
            list_issues(self.db, self._predicate(), page=0)

        result = list_issues(self.db, self._predicate(), limit=1000)
        self.assertEqual(result["pagination"]["limit"], 100)

    def test_generate_stats(self):
        from issuesync.services.aggregation import generate_stats

        seed_issues(
            self.db,
            raw_issue(1, created_at="2024-01-01T00:00:00Z", labels=["bug"], assignees=[(1, "alice")]),
            raw_issue(2, created_at="2024-02-01T00:00:00Z", updated_at="2024-03-09T00:00:00Z", labels=["bug", "ui"]),
            raw_issue(3, state="closed", pull_request={"merged_at": "2024-02-02T00:00:00Z"}),
            raw_issue(4, state="closed", pull_request={"merged_at": None}),
            raw_issue(5, pull_request={"merged_at": None}),
        )

        stats = generate_stats(self.db, now=datetime(2024, 3, 10))

        self.assertEqual(stats["total_count"], 5)
        self.assertEqual(stats["open_count"], 3)
        self.assertEqual(stats["closed_count"], 2)
        self.assertEqual(stats["recently_updated"], 1)
        self.assertEqual(stats["prs"], 3)
        self.assertEqual(stats["pr_ongoing"], 1)
        self.assertEqual(stats["pr_failed"], 1)
        self.assertEqual(stats["pr_merged"], 1)
        self.assertEqual(stats["top_labels"][0], {"label": "bug", "count": 2})
        self.assertEqual(stats["top_assignees"], [{"login": "alice", "count": 1}])
        self.assertEqual(stats["oldest_issue"]["number"], 1)


if __name__ == "__main__":
    unittest.main()
