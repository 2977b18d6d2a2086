import json
import tempfile
import unittest
from pathlib import Path

import httpx

from histgraph.chat.llm import AnthropicChatClient, LLMError
from histgraph.extract.importer import import_extractions
from histgraph.extract.questions import index_questions, load_questions
from histgraph.extract.runner import ExtractOptions, output_path_for, run_extraction
from histgraph.graph import GraphStore


QUESTIONS = [
    {"id": "q1", "question": "Which acts divided the South into military districts?", "answer": "Reconstruction Acts", "quarter": "1", "division": "US History"},
    {"id": "q2", "question": "This bad question breaks the model.", "answer": "?", "division": "US History"},
    {"id": "q3", "question": "Who led the Radical Republicans in the House?", "answer": "Thaddeus Stevens", "division": "US History"},
]

REPLIES = {
    "q1": {
        "nodes": [
            {"name": "Reconstruction Acts", "type": "event", "subdivision": "government"},
            {"name": "Radical Republicans", "type": "concept"},
        ],
        "relationships": [{"from": "Reconstruction Acts", "to": "Radical Republicans", "relation": "enacted_by"}],
    },
    "q3": {
        "nodes": [
            {"name": "Thaddeus Stevens", "type": "person"},
            {"name": "Radical Republicans", "type": "concept"},
        ],
        "relationships": [
            {"from": "Thaddeus Stevens", "to": "Radical Republicans", "relation": "led"},
            {"from": "Thaddeus Stevens", "to": "Somebody Unlisted", "relation": "opposed"},
        ],
    },
}


class FakeLLM:
    def __init__(self):
        self.prompts = []

    def chat(self, messages, *, max_tokens=None):
        prompt = messages[-1].content
        self.prompts.append(prompt)
        for q in QUESTIONS:
            if q["question"] in prompt:
                if q["id"] == "q2":
                    return "I am not able to produce JSON for this."
                return "```json\n" + json.dumps(REPLIES[q["id"]]) + "\n```"
        raise LLMError("unexpected prompt")


class TestExtraction(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.bank = self.root / "banks" / "set1.json"
        self.bank.parent.mkdir()
        self.bank.write_text(json.dumps({"questions": QUESTIONS}), encoding="utf-8")
        self.out = self.root / "out"

    def tearDown(self):
        self._tmp.cleanup()

    def test_load_questions_jsonl_defaults(self):
        p = self.root / "bank.jsonl"
        p.write_text(
            '{"question": "Q one", "answer": "A", "category": "World History"}\n\n{"answer": "no text"}\n',
            encoding="utf-8",
        )
        qs = load_questions(p)
        self.assertEqual(len(qs), 1)
        self.assertEqual(qs[0].id, "bank:0")
        self.assertEqual(qs[0].division, "World History")

    def test_batch_skips_malformed_and_rate_limits(self):
        llm = FakeLLM()
        sleeps = []
        opts = ExtractOptions(input_path=self.bank.parent, out_dir=self.out, request_delay_s=1.5)
        with self.assertLogs("histgraph.extract.runner", level="WARNING") as logs:
            res = run_extraction(llm=llm, options=opts, sleep=sleeps.append)

        self.assertEqual(res, {"questions_seen": 3, "extracted": 2, "skipped_existing": 0, "failed": 1})
        self.assertEqual(sleeps, [1.5, 1.5])
        self.assertTrue(any("q2" in m for m in logs.output))

        lines = output_path_for(self.bank, self.out).read_text(encoding="utf-8").splitlines()
        self.assertEqual([json.loads(l)["question_id"] for l in lines], ["q1", "q3"])

        # Re-running only retries the failed question.
        llm2 = FakeLLM()
        with self.assertLogs("histgraph.extract.runner", level="WARNING"):
            res = run_extraction(llm=llm2, options=opts, sleep=lambda s: None)
        self.assertEqual(res["skipped_existing"], 2)
        self.assertEqual(len(llm2.prompts), 1)

    def test_batch_survives_non_json_http_body(self):
        bank = self.root / "two.json"
        bank.write_text(json.dumps([QUESTIONS[0], QUESTIONS[2]]), encoding="utf-8")
        replies = [
            httpx.Response(200, text="<html>gateway</html>"),
            httpx.Response(200, json={"content": [{"type": "text", "text": json.dumps(REPLIES["q3"])}]}),
        ]
        llm = AnthropicChatClient(api_key="k", model="m", transport=httpx.MockTransport(lambda r: replies.pop(0)))

        opts = ExtractOptions(input_path=bank, out_dir=self.out, request_delay_s=0)
        with self.assertLogs("histgraph.extract.runner", level="WARNING") as logs:
            res = run_extraction(llm=llm, options=opts)

        self.assertEqual((res["extracted"], res["failed"]), (1, 1))
        self.assertTrue(any("q1" in m for m in logs.output))
        lines = output_path_for(bank, self.out).read_text(encoding="utf-8").splitlines()
        self.assertEqual([json.loads(l)["question_id"] for l in lines], ["q3"])

    async def test_import_into_store(self):
        opts = ExtractOptions(input_path=self.bank, out_dir=self.out, request_delay_s=0)
        with self.assertLogs("histgraph.extract.runner", level="WARNING"):
            run_extraction(llm=FakeLLM(), options=opts)

        store = await GraphStore.open(":memory:")
        try:
            res = await import_extractions(store=store, input_path=self.out)
            self.assertEqual(res["files"], 1)
            self.assertEqual(res["records"], 2)
            self.assertEqual(res["nodes"], 3)
            self.assertEqual(res["relationships"], 2)
            self.assertEqual(res["question_links"], 4)

            nodes = await store.nodes_by_division("US History")
            self.assertEqual(
                [n.id for n in nodes],
                ["radical_republicans", "reconstruction_acts", "thaddeus_stevens"],
            )
            related = sorted(n.id for n in await store.related_nodes("radical_republicans"))
            self.assertEqual(related, ["reconstruction_acts", "thaddeus_stevens"])
            self.assertEqual(await store.questions_for_node("radical_republicans"), ["q1", "q3"])

            # Importing the same output again adds nothing.
            res = await import_extractions(store=store, input_path=self.out)
            self.assertEqual((res["nodes"], res["relationships"], res["question_links"]), (0, 0, 0))
        finally:
            await store.close()

    def test_index_questions(self):
        bank = index_questions([self.bank.parent])
        self.assertEqual(sorted(bank), ["q1", "q2", "q3"])
        self.assertEqual(bank["q3"].answer, "Thaddeus Stevens")


if __name__ == "__main__":
    unittest.main()
