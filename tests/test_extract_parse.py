import json
import unittest

from histgraph.extract.parse import (
    ExtractionError,
    build_extraction_prompt,
    node_id_for,
    parse_extraction,
    strip_code_fences,
)


REPLY = """```json
{
  "nodes": [
    {"name": "Reconstruction Acts", "type": "event", "division": "US History", "subdivision": "Government"},
    {"name": "Radical Republicans", "type": "faction"}
  ],
  "relationships": [
    {"from": "Reconstruction Acts", "to": "Radical Republicans", "relation": "enacted_by"},
    {"from": "Radical Republicans", "to": "Andrew Johnson", "relation": "impeached"}
  ]
}
```"""


class TestExtractionParse(unittest.TestCase):
    def test_prompt_mentions_vocabulary(self):
        prompt = build_extraction_prompt(question="Who?", answer="Lincoln", division="US History")
        self.assertIn('Question: "Who?"', prompt)
        self.assertIn("Division: US History", prompt)
        self.assertIn("enacted_by", prompt)
        self.assertIn("person, event, place, concept", prompt)

    def test_strip_code_fences(self):
        self.assertEqual(strip_code_fences('```json\n{"a": 1}\n```'), '{"a": 1}')
        self.assertEqual(strip_code_fences('{"a": 1}'), '{"a": 1}')

    def test_node_id_for(self):
        self.assertEqual(node_id_for("Radical Republicans"), "radical_republicans")
        self.assertEqual(node_id_for("  Plessy v. Ferguson "), "plessy_v_ferguson")

    def test_parse_normalizes(self):
        ext = parse_extraction(REPLY, default_division="us_history")
        by_id = {n["id"]: n for n in ext.nodes}
        self.assertEqual(by_id["reconstruction_acts"]["division"], "us_history")
        self.assertEqual(by_id["reconstruction_acts"]["subdivision"], "government")
        self.assertEqual(by_id["radical_republicans"]["type"], "concept")
        self.assertEqual(by_id["radical_republicans"]["division"], "us_history")

        rels = ext.relationships
        self.assertEqual(rels[0]["from_node"], "reconstruction_acts")
        self.assertEqual(rels[0]["to_node"], "radical_republicans")
        self.assertEqual(rels[0]["relation"], "enacted_by")
        self.assertEqual(rels[1]["to_node"], "andrew_johnson")
        self.assertEqual(rels[1]["relation"], "related_to")

    def test_duplicate_names_collapse(self):
        reply = json.dumps({"nodes": [{"name": "Lincoln"}, {"name": "lincoln"}], "relationships": []})
        ext = parse_extraction(reply, default_division="US History")
        self.assertEqual([n["id"] for n in ext.nodes], ["lincoln"])

    def test_malformed_replies(self):
        bad = [
            "Sorry, I can't help with that.",
            "[]",
            json.dumps({"relationships": []}),
            json.dumps({"nodes": [{"type": "person"}], "relationships": []}),
            json.dumps({"nodes": [], "relationships": [{"from": "A"}]}),
        ]
        for text in bad:
            with self.assertRaises(ExtractionError, msg=text):
                parse_extraction(text, default_division="us_history")


if __name__ == "__main__":
    unittest.main()
