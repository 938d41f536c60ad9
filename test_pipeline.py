import asyncio
import unittest
from unittest.mock import AsyncMock, patch

from smadr.errors import (
    AuthError,
    TransportError,
    PipelineBusyError,
    PipelineCancelledError,
)
from smadr.pipeline import Pipeline, PipelineState, RequestContext
from smadr.prompts import (
    STRATEGIST_SYSTEM_INSTRUCTION,
    INITIAL_SYSTEM_INSTRUCTION,
    REFINEMENT_SYSTEM_INSTRUCTION,
    SYNTHESIZER_SYSTEM_INSTRUCTION,
    INTERNAL_CONTEXT_MARKER,
)
from smadr.providers import Provider, ProviderConfig, Turn


CONFIG = ProviderConfig(provider=Provider.GROQ, model="llama-3.3-70b", api_key="gsk_test")
HISTORY = [Turn("user", "earlier question"), Turn("assistant", "earlier answer")]


class StubProvider:
    """Answers plan, init0..3, ref0..3, final in call order and records every call."""

    def __init__(self, fail_on_call=None, error=None):
        self.calls = []
        self.fail_on_call = fail_on_call
        self.error = error or TransportError("API Error from groq: boom", status_code=500)
        self._counters = {}

    async def __call__(self, conversation, system_instruction, config):
        self.calls.append((list(conversation), system_instruction, config))
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise self.error
        if system_instruction == STRATEGIST_SYSTEM_INSTRUCTION:
            return "plan"
        if system_instruction == SYNTHESIZER_SYSTEM_INSTRUCTION:
            return "final"
        prefix = "init" if system_instruction == INITIAL_SYSTEM_INSTRUCTION else "ref"
        index = self._counters.get(prefix, 0)
        self._counters[prefix] = index + 1
        return f"{prefix}{index}"

    @property
    def instructions(self):
        return [instruction for _, instruction, _ in self.calls]

    def last_turn(self, call_index):
        return self.calls[call_index][0][-1].text


class RecordingSink:
    def __init__(self):
        self.progress = []
        self.completed = []
        self.errors = []

    def on_progress(self, label):
        self.progress.append(label)

    def on_complete(self, text):
        self.completed.append(text)

    def on_error(self, error):
        self.errors.append(error)


class TestPipelineSequence(unittest.IsolatedAsyncioTestCase):

    async def test_issues_ten_calls_in_stage_order(self):
        stub = StubProvider()
        result = await Pipeline(generate_fn=stub).run(HISTORY, "Why is the sky blue?", CONFIG)

        self.assertEqual(result, "final")
        self.assertEqual(
            stub.instructions,
            [STRATEGIST_SYSTEM_INSTRUCTION]
            + [INITIAL_SYSTEM_INSTRUCTION] * 4
            + [REFINEMENT_SYSTEM_INSTRUCTION] * 4
            + [SYNTHESIZER_SYSTEM_INSTRUCTION],
        )

    async def test_strategize_sees_history_and_raw_query(self):
        stub = StubProvider()
        await Pipeline(generate_fn=stub).run(HISTORY, "Why is the sky blue?", CONFIG)

        conversation = stub.calls[0][0]
        self.assertEqual(conversation[:2], HISTORY)
        self.assertEqual(conversation[2], Turn("user", "Why is the sky blue?"))

    async def test_initial_calls_share_the_planned_turn(self):
        stub = StubProvider()
        await Pipeline(generate_fn=stub).run(HISTORY, "Why is the sky blue?", CONFIG)

        expected = 'User Query: "Why is the sky blue?"\n\nExecution Plan:\nplan'
        for call_index in range(1, 5):
            conversation = stub.calls[call_index][0]
            self.assertEqual(len(conversation), 3)
            self.assertEqual(conversation[:2], HISTORY)
            self.assertEqual(conversation[-1], Turn("user", expected))

    async def test_refinement_labels_self_and_peers_in_slot_order(self):
        stub = StubProvider()
        await Pipeline(generate_fn=stub).run([], "q", CONFIG)

        initial = ["init0", "init1", "init2", "init3"]
        for slot in range(4):
            text = stub.last_turn(5 + slot)
            self.assertTrue(text.startswith('User Query: "q"\n\nExecution Plan:\nplan'))
            self.assertIn(INTERNAL_CONTEXT_MARKER, text)
            self.assertIn(f'My initial response was: "init{slot}".', text)

            peers = [r for j, r in enumerate(initial) if j != slot]
            expected_peers = (
                f'The other agents responded with: 1. "{peers[0]}" 2. "{peers[1]}" 3. "{peers[2]}".'
            )
            self.assertIn(expected_peers, text)

    async def test_synthesis_lists_refined_responses_in_order(self):
        stub = StubProvider()
        result = await Pipeline(generate_fn=stub).run([], "q", CONFIG)

        self.assertEqual(result, "final")
        text = stub.last_turn(9)
        positions = [text.index(f'Refined Response {k + 1}:\n"ref{k}"') for k in range(4)]
        self.assertEqual(positions, sorted(positions))
        self.assertNotIn("init0", text)

    async def test_progress_is_reported_before_each_call(self):
        events = []
        stub = StubProvider()

        async def generate_fn(conversation, system_instruction, config):
            events.append("call")
            return await stub(conversation, system_instruction, config)

        await Pipeline(generate_fn=generate_fn).run([], "q", CONFIG, on_progress=events.append)

        self.assertEqual(len(events), 20)
        labels = events[0::2]
        self.assertEqual(events[1::2], ["call"] * 10)
        self.assertEqual(labels[0], "Strategizing: Formulating optimal approach...")
        self.assertEqual(labels[1], "Initializing agent 1/4: Generating analysis...")
        self.assertEqual(labels[4], "Initializing agent 4/4: Generating analysis...")
        self.assertEqual(labels[5], "Refining answer 1/4: Critiquing and improving...")
        self.assertEqual(labels[9], "Synthesizing: Compiling final response...")

    async def test_states_move_forward_during_the_run(self):
        pipeline = Pipeline()
        seen = []
        stub = StubProvider()

        async def generate_fn(conversation, system_instruction, config):
            seen.append(pipeline.state)
            return await stub(conversation, system_instruction, config)

        pipeline._generate = generate_fn
        await pipeline.run([], "q", CONFIG)

        self.assertEqual(
            seen,
            [PipelineState.STRATEGIZING]
            + [PipelineState.INITIALIZING] * 4
            + [PipelineState.REFINING] * 4
            + [PipelineState.SYNTHESIZING],
        )
        self.assertEqual(pipeline.state, PipelineState.IDLE)
        self.assertFalse(pipeline.is_running)

    async def test_history_snapshot_is_not_mutated(self):
        history = list(HISTORY)
        await Pipeline(generate_fn=StubProvider()).run(history, "q", CONFIG)
        self.assertEqual(history, HISTORY)

    @patch('smadr.pipeline.generate', new_callable=AsyncMock)
    async def test_default_generate_is_the_provider_adapter(self, mock_generate):
        mock_generate.return_value = "text"
        result = await Pipeline().run([], "q", CONFIG)

        self.assertEqual(result, "text")
        self.assertEqual(mock_generate.await_count, 10)


class TestPipelineFailures(unittest.IsolatedAsyncioTestCase):

    async def test_blank_query_issues_no_calls(self):
        for query in ["", "   ", "\n\t"]:
            stub = StubProvider()
            pipeline = Pipeline(generate_fn=stub)
            progress = []

            result = await pipeline.run(HISTORY, query, CONFIG, on_progress=progress.append)

            self.assertIsNone(result)
            self.assertEqual(stub.calls, [])
            self.assertEqual(progress, [])
            self.assertEqual(pipeline.state, PipelineState.IDLE)

    async def test_missing_credential_fails_before_any_call(self):
        stub = StubProvider()
        config = ProviderConfig(provider=Provider.OPENROUTER, model="m", api_key="")

        with self.assertRaises(AuthError) as ctx:
            await Pipeline(generate_fn=stub).run([], "q", config)

        self.assertEqual(str(ctx.exception), "openrouter API key is missing.")
        self.assertEqual(stub.calls, [])

    async def test_strategize_failure_stops_everything(self):
        stub = StubProvider(fail_on_call=1)

        with self.assertRaises(TransportError):
            await Pipeline(generate_fn=stub).run([], "q", CONFIG)

        self.assertEqual(len(stub.calls), 1)

    async def test_failure_in_refinement_skips_synthesis(self):
        stub = StubProvider(fail_on_call=6)

        with self.assertRaises(TransportError) as ctx:
            await Pipeline(generate_fn=stub).run([], "q", CONFIG)

        self.assertEqual(ctx.exception.status_code, 500)
        self.assertEqual(len(stub.calls), 6)
        self.assertNotIn(SYNTHESIZER_SYSTEM_INSTRUCTION, stub.instructions)

    async def test_failure_in_initial_stage_skips_refinement(self):
        stub = StubProvider(fail_on_call=3)

        with self.assertRaises(TransportError):
            await Pipeline(generate_fn=stub).run([], "q", CONFIG)

        self.assertEqual(len(stub.calls), 3)
        self.assertNotIn(REFINEMENT_SYSTEM_INSTRUCTION, stub.instructions)

    async def test_pipeline_is_reusable_after_failure(self):
        pipeline = Pipeline(generate_fn=StubProvider(fail_on_call=2))
        with self.assertRaises(TransportError):
            await pipeline.run([], "q", CONFIG)

        pipeline._generate = StubProvider()
        self.assertEqual(await pipeline.run([], "q", CONFIG), "final")

    async def test_second_submission_while_running_is_rejected(self):
        release = asyncio.Event()
        started = asyncio.Event()
        stub = StubProvider()

        async def slow_generate(conversation, system_instruction, config):
            started.set()
            await release.wait()
            return await stub(conversation, system_instruction, config)

        pipeline = Pipeline(generate_fn=slow_generate)
        first = asyncio.create_task(pipeline.run([], "first", CONFIG))
        await started.wait()

        with self.assertRaises(PipelineBusyError):
            await pipeline.run([], "second", CONFIG)

        release.set()
        self.assertEqual(await first, "final")
        self.assertEqual(len(stub.calls), 10)

    async def test_reserved_pipeline_rejects_other_submissions(self):
        stub = StubProvider()
        pipeline = Pipeline(generate_fn=stub)
        pipeline.reserve()

        self.assertTrue(pipeline.is_running)
        with self.assertRaises(PipelineBusyError):
            pipeline.reserve()
        with self.assertRaises(PipelineBusyError):
            await pipeline.run([], "second", CONFIG)
        self.assertEqual(stub.calls, [])

        self.assertEqual(await pipeline.run([], "first", CONFIG, reserved=True), "final")
        self.assertFalse(pipeline.is_running)

    async def test_reservation_is_released_after_failure(self):
        pipeline = Pipeline(generate_fn=StubProvider(fail_on_call=1))
        pipeline.reserve()

        with self.assertRaises(TransportError):
            await pipeline.run([], "q", CONFIG, reserved=True)

        self.assertFalse(pipeline.is_running)
        pipeline.reserve()

    async def test_cancel_stops_before_next_call(self):
        cancel = asyncio.Event()
        stub = StubProvider()

        async def generate_fn(conversation, system_instruction, config):
            result = await stub(conversation, system_instruction, config)
            if len(stub.calls) == 2:
                cancel.set()
            return result

        with self.assertRaises(PipelineCancelledError):
            await Pipeline(generate_fn=generate_fn).run([], "q", CONFIG, cancel=cancel)

        self.assertEqual(len(stub.calls), 2)

    async def test_config_swap_mid_flight_does_not_affect_request(self):
        session = {"config": CONFIG}
        other = ProviderConfig(provider=Provider.GOOGLE, model="gemini-2.5-pro", api_key="AIza-other")
        stub = StubProvider()

        async def generate_fn(conversation, system_instruction, config):
            session["config"] = other
            return await stub(conversation, system_instruction, config)

        await Pipeline(generate_fn=generate_fn).run([], "q", session["config"])

        self.assertEqual({config for _, _, config in stub.calls}, {CONFIG})
        self.assertIs(session["config"], other)


class TestPipelineSubmit(unittest.IsolatedAsyncioTestCase):

    async def test_success_emits_single_complete_event(self):
        sink = RecordingSink()
        result = await Pipeline(generate_fn=StubProvider()).submit([], "q", CONFIG, sink)

        self.assertEqual(result, "final")
        self.assertEqual(sink.completed, ["final"])
        self.assertEqual(sink.errors, [])
        self.assertEqual(len(sink.progress), 10)

    async def test_failure_emits_single_error_event(self):
        sink = RecordingSink()
        result = await Pipeline(generate_fn=StubProvider(fail_on_call=10)).submit([], "q", CONFIG, sink)

        self.assertIsNone(result)
        self.assertEqual(sink.completed, [])
        self.assertEqual(len(sink.errors), 1)
        self.assertEqual(str(sink.errors[0]), "API Error from groq: boom")

    async def test_blank_query_emits_nothing(self):
        sink = RecordingSink()
        result = await Pipeline(generate_fn=StubProvider()).submit([], "  ", CONFIG, sink)

        self.assertIsNone(result)
        self.assertEqual((sink.progress, sink.completed, sink.errors), ([], [], []))


class TestRequestContext(unittest.TestCase):

    def _context(self):
        return RequestContext(history=(), user_query="q", config=CONFIG)

    def test_backward_transition_is_rejected(self):
        ctx = self._context()
        ctx.advance(PipelineState.STRATEGIZING)
        ctx.advance(PipelineState.INITIALIZING, 0)
        with self.assertRaises(RuntimeError):
            ctx.advance(PipelineState.STRATEGIZING)

    def test_slot_must_increase_within_a_stage(self):
        ctx = self._context()
        ctx.advance(PipelineState.REFINING, 1)
        with self.assertRaises(RuntimeError):
            ctx.advance(PipelineState.REFINING, 1)
        ctx.advance(PipelineState.REFINING, 2)
        self.assertEqual(ctx.slot, 2)

    def test_failed_is_terminal(self):
        ctx = self._context()
        ctx.advance(PipelineState.STRATEGIZING)
        ctx.fail(TransportError("down"))
        self.assertEqual(ctx.state, PipelineState.FAILED)
        with self.assertRaises(RuntimeError):
            ctx.advance(PipelineState.INITIALIZING, 0)

    def test_planned_query_requires_plan(self):
        ctx = self._context()
        with self.assertRaises(RuntimeError):
            ctx.planned_query
        ctx.plan = "step 1"
        self.assertEqual(ctx.planned_query, 'User Query: "q"\n\nExecution Plan:\nstep 1')


if __name__ == "__main__":
    unittest.main()
