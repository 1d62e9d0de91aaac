import logging
import unittest

logging.disable(logging.CRITICAL)


def _project(id, name, parent_id=None):
    from taskbridge.schemas import Project

    return Project(id=id, name=name, parent_id=parent_id)


class OrgMappingParsingTests(unittest.TestCase):
    def test_blank_means_no_mappings(self):
        from taskbridge.services.hierarchy import parse_org_mappings

        self.assertEqual(parse_org_mappings(None), {})
        self.assertEqual(parse_org_mappings("   "), {})

    def test_valid_object(self):
        from taskbridge.services.hierarchy import parse_org_mappings

        self.assertEqual(parse_org_mappings('{"100": "acme", "200": "globex"}'), {"100": "acme", "200": "globex"})

    def test_invalid_values_raise_configuration_error(self):
        from taskbridge.services.hierarchy import ConfigurationError, parse_org_mappings

        for raw in ("{not json", '["acme"]', '{"100": 5}'):
            with self.subTest(raw=raw):
                with self.assertRaises(ConfigurationError):
                    parse_org_mappings(raw)


class GroupHierarchyTests(unittest.TestCase):
    def test_two_pass_build(self):
        from taskbridge.services.hierarchy import build_group_hierarchy

        projects = [
            _project("200", "widgets", parent_id="100"),  # child listed before its parent
            _project("100", "Acme"),
            _project("300", "gadgets", parent_id="100"),
            _project("400", "Personal"),
            _project("500", "groceries", parent_id="400"),
            _project("600", "deep", parent_id="200"),
        ]
        hierarchy = build_group_hierarchy(projects, {"100": "acme"})

        self.assertEqual(list(hierarchy.parent_groups), ["100"])
        self.assertEqual(sorted(hierarchy.sub_groups), ["200", "300"])
        self.assertEqual(hierarchy.repo_to_group, {"acme/widgets": "200", "acme/gadgets": "300"})

        widgets = hierarchy.sub_groups["200"]
        self.assertEqual(widgets.repo_name, "widgets")
        self.assertEqual(widgets.full_repo_name, "acme/widgets")
        routing = widgets.routing()
        self.assertEqual(routing.group_id, "200")
        self.assertEqual(routing.org_name, "acme")
        self.assertEqual(hierarchy.group_for_repo("acme/gadgets").id, "300")
        self.assertIsNone(hierarchy.group_for_repo("acme/nope"))

    def test_no_mapped_parents_gives_empty_hierarchy(self):
        from taskbridge.services.hierarchy import build_group_hierarchy

        hierarchy = build_group_hierarchy([_project("1", "x"), _project("2", "y", "1")], {"999": "acme"})
        self.assertEqual(hierarchy.sub_groups, {})
