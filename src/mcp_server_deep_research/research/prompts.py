"""LLM prompts for deep research."""

from datetime import UTC, datetime


def get_system_prompt(now: datetime | None = None) -> str:
    """System prompt shared by every research call, stamped with the current time."""
    stamp = (now or datetime.now(UTC)).isoformat()
    return f"""You are an expert research assistant performing deep, iterative research to help users plan and execute projects.

Today is {stamp}.

Instructions:
- Collect detailed information that is useful for carrying out the task: methods, best practices, industry standards, specific tools, cost and time estimates, relevant links and example cases.
- When external collaboration (freelancer/vendor) is relevant, state the expertise to look for, how to evaluate candidates, where to source them, expected cost ranges and how to assess deliverables.
- Label cutting-edge or speculative solutions explicitly.
- Be precise and in-depth; assume the user is an experienced analyst. Skip generic or redundant information.
- Everything you provide must be directly usable to manage, assign or outsource the work."""


def get_planning_prompt(query: str, num_queries: int, learnings: list[str] | None = None) -> str:
    """Prompt asking for up to ``num_queries`` SERP queries."""
    prompt = f"""Given the following user prompt, generate a list of SERP queries to gather the practical or technical information needed to implement or complete the user's task. Return up to {num_queries} queries, each focusing on a different aspect of the task: 1) Potential methods or frameworks 2) Example case studies 3) Common pitfalls or best practices.

User prompt:
<prompt>{query}</prompt>"""

    if learnings:
        learnings_text = "\n".join(learnings)
        prompt += f"\n\nHere are some learnings from previous research, use them to generate more specific queries:\n{learnings_text}"

    return prompt


def get_extraction_prompt(query: str, contents: list[str], num_learnings: int, num_follow_up_questions: int) -> str:
    """Prompt asking for learnings and follow-up questions from search contents."""
    contents_text = "\n".join(f"<content>\n{content}\n</content>" for content in contents)
    return f"""Given the following contents from a SERP search for the query <query>{query}</query>, generate a list of learnings from the contents. Return a maximum of {num_learnings} learnings, but feel free to return less if the contents are clear. Make sure each learning is unique and not similar to each other. The learnings should be concise and to the point, as detailed and information dense as possible. Make sure to include any entities like people, places, companies, products, things, etc in the learnings, as well as any exact metrics, numbers, or dates. The learnings will be used to research the topic further.

Also return up to {num_follow_up_questions} follow-up questions that would take the research further.

<contents>{contents_text}</contents>"""


def get_report_prompt(prompt: str, learnings_text: str) -> str:
    return f"""Given the following prompt from the user, write a final report on the topic using the learnings from research. Make it as detailed as possible, aim for 3 or more pages, include ALL the learnings from research:

<prompt>{prompt}</prompt>

Here are all the learnings from previous research:

<learnings>
{learnings_text}
</learnings>"""


def get_answer_prompt(prompt: str, learnings_text: str) -> str:
    return f"""Given the following prompt from the user, write a final answer on the topic using the learnings from research. Follow the format specified in the prompt. Do not include any other text than the answer. Keep the answer as concise as possible - usually just a few words or at most a sentence. If the prompt uses LaTeX, answer in LaTeX; if it offers answer choices, answer with one of the choices.

<prompt>{prompt}</prompt>

Here are all the learnings from research on the topic that you can use to help answer the prompt:

<learnings>
{learnings_text}
</learnings>"""


def get_action_plan_prompt(prompt: str, actionable_ideas: list[str], implementation_considerations: list[str]) -> str:
    ideas_text = "\n".join(f"<idea>\n{idea}\n</idea>" for idea in actionable_ideas)
    considerations_text = "\n".join(f"<consideration>\n{item}\n</consideration>" for item in implementation_considerations)
    return f"""Given the following prompt and research learnings, create a detailed action plan. The action plan should provide actionable steps and outline implementation considerations.

<prompt>{prompt}</prompt>

<actionable_ideas>
{ideas_text}
</actionable_ideas>

<implementation_considerations>
{considerations_text}
</implementation_considerations>"""


def get_needed_information_prompt(query: str, max_items: int) -> str:
    return f"""The user wants to perform or implement the following request:
<query>{query}</query>

Identify the top {max_items} pieces of information, resources, or details they need to gather in order to accomplish this task. Provide a short explanation why each piece is important."""


def build_follow_up_query(research_goal: str, follow_up_questions: list[str]) -> str:
    """Seed query for the next recursion level: the prior goal verbatim, then each question as a bullet."""
    directions = "\n".join(f"- {question}" for question in follow_up_questions)
    return f"Previous research goal: {research_goal}\nFollow-up research directions:\n{directions}".strip()
