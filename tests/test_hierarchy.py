import unittest

from store_helpers import memory_session_factory


class HierarchyResolverTests(unittest.TestCase):
    def setUp(self):
        from issuesync.models import Person

        self.db = memory_session_factory()()
        # A <- B <- C, plus D (no tracker account) reporting to A with E under D.
        self.a = Person(name="A", external_id=100)
        self.db.add(self.a)
        self.db.flush()
        self.b = Person(name="B", external_id=200, reports_to_id=self.a.id)
        self.d = Person(name="D", external_id=None, reports_to_id=self.a.id)
        self.db.add_all([self.b, self.d])
        self.db.flush()
        self.c = Person(name="C", external_id=300, reports_to_id=self.b.id)
        self.e = Person(name="E", external_id=500, reports_to_id=self.d.id)
        self.db.add_all([self.c, self.e])
        self.db.commit()

    def tearDown(self):
        self.db.close()

    def test_direct_reports_only(self):
        from issuesync.services.hierarchy import HierarchyResolver

        self.assertEqual(HierarchyResolver(self.db).resolve_reports(self.a.id), {200})

    def test_indirect_reports(self):
        from issuesync.services.hierarchy import HierarchyResolver

        resolved = HierarchyResolver(self.db).resolve_reports(self.a.id, include_indirect=True)
        # D has no account so is traversed but not returned.
        self.assertEqual(resolved, {200, 300, 500})

    def test_unknown_person_resolves_to_empty_set(self):
        from issuesync.services.hierarchy import HierarchyResolver

        self.assertEqual(HierarchyResolver(self.db).resolve_reports(9999, include_indirect=True), set())

    def test_person_without_reports_resolves_to_empty_set(self):
        from issuesync.services.hierarchy import HierarchyResolver

        resolver = HierarchyResolver(self.db)
        self.assertEqual(resolver.resolve_reports(self.c.id), set())
        self.assertEqual(resolver.resolve_reports(self.c.id, include_indirect=True), set())

    def test_cycle_terminates(self):
        from issuesync.services.hierarchy import HierarchyResolver

        self.a.reports_to_id = self.c.id
        self.db.commit()

        resolved = HierarchyResolver(self.db).resolve_reports(self.a.id, include_indirect=True)
        self.assertEqual(resolved, {200, 300, 500})

    def test_module_members(self):
        from issuesync.models import PersonModule
        from issuesync.services.hierarchy import HierarchyResolver

        self.db.add_all(
            [
                PersonModule(person_id=self.a.id, module="core"),
                PersonModule(person_id=self.b.id, module="ui"),
                PersonModule(person_id=self.d.id, module="core"),
            ]
        )
        self.db.commit()

        resolver = HierarchyResolver(self.db)
        self.assertEqual(resolver.resolve_module_members(["core"]), {100})
        self.assertEqual(resolver.resolve_module_members(["core", "ui"]), {100, 200})
        self.assertEqual(resolver.resolve_module_members([]), set())


if __name__ == "__main__":
    unittest.main()
