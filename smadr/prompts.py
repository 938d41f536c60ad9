"""Role instructions and context templates for the four pipeline stages."""

from typing import List, Sequence

STRATEGIST_SYSTEM_INSTRUCTION = (
    "You are a master strategist AI. Your task is to analyze the user's query and create a detailed, "
    "step-by-step plan for how a team of AI agents should approach answering it. Identify key areas to "
    "research, potential ambiguities to clarify, and the best structure for the final response. This plan "
    "will guide the other agents."
)

INITIAL_SYSTEM_INSTRUCTION = (
    "You are an expert-level AI assistant. Your task is to provide a comprehensive, accurate, and "
    "well-reasoned initial response to the user's query, strictly following the provided execution plan. "
    "Aim for clarity and depth. Note: Your response is an intermediate step for other AI agents and will "
    "not be shown to the user. Be concise and focus on core information without unnecessary verbosity."
)

REFINEMENT_SYSTEM_INSTRUCTION = (
    "You are a reflective AI agent. Your primary task is to find flaws. Critically analyze your previous "
    "response and the responses from other AI agents, considering the original execution plan. Focus "
    "specifically on identifying factual inaccuracies, logical fallacies, omissions, or any other "
    "weaknesses. Your goal is to generate a new, revised response that corrects these specific errors and "
    "is free from the flaws you have identified. Note: This refined response is for a final synthesizer "
    "agent, not the user, so be direct and prioritize accuracy over conversational style."
)

SYNTHESIZER_SYSTEM_INSTRUCTION = (
    "You are a master synthesizer AI. Your PRIMARY GOAL is to write the final, complete response to the "
    "user's query. You will be given the user's query, an execution plan, and four refined responses from "
    "other AI agents. Your task is to analyze these responses, identifying their strengths to incorporate "
    "and their flaws to discard, while ensuring the final output aligns with the initial plan. Use this "
    "analysis to construct the single best possible answer for the user. Do not just critique the other "
    "agents; your output should BE the final, polished response."
)

INTERNAL_CONTEXT_MARKER = "---INTERNAL CONTEXT---"


def build_planned_query(user_query: str, plan: str) -> str:
    return f'User Query: "{user_query}"\n\nExecution Plan:\n{plan}'


def with_internal_context(planned_query: str, context: str) -> str:
    return f"{planned_query}\n\n{INTERNAL_CONTEXT_MARKER}\n{context}"


def build_refinement_context(own_response: str, peer_responses: Sequence[str]) -> str:
    """
    Frame one agent's own draft against its peers' drafts.

    Args:
        own_response: The initial response from this agent slot
        peer_responses: The other slots' responses, in slot order

    Returns:
        Context block for the refinement turn
    """
    peers = " ".join(
        f'{index}. "{response}"' for index, response in enumerate(peer_responses, start=1)
    )
    return (
        f'My initial response was: "{own_response}". '
        f"The other agents responded with: {peers}. "
        "Based on this context, critically re-evaluate and provide a new, improved response."
    )


def build_synthesis_context(refined_responses: Sequence[str]) -> str:
    sections: List[str] = [
        f'Refined Response {index}:\n"{response}"'
        for index, response in enumerate(refined_responses, start=1)
    ]
    header = (
        f"Here are the {_count_word(len(refined_responses))} refined responses to the user's query. "
        "Your task is to synthesize them into the best single, final answer."
    )
    return "\n\n".join([header] + sections)


def _count_word(count: int) -> str:
    words = {1: "one", 2: "two", 3: "three", 4: "four", 5: "five", 6: "six"}
    return words.get(count, str(count))


def strategizing_label() -> str:
    return "Strategizing: Formulating optimal approach..."


def initializing_label(slot: int, total: int) -> str:
    return f"Initializing agent {slot + 1}/{total}: Generating analysis..."


def refining_label(slot: int, total: int) -> str:
    return f"Refining answer {slot + 1}/{total}: Critiquing and improving..."


def synthesizing_label() -> str:
    return "Synthesizing: Compiling final response..."
