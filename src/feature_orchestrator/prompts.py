"""Prompt templates sent to the agent CLIs."""


def build_generator_prompt(feature: str) -> str:
    """Prompt asking the generator to turn a feature request into an implementation brief."""
    return (
        f'Given this feature request: "{feature}", generate a detailed implementation '
        "prompt for another AI coding agent. Include specific files to create/modify, "
        "acceptance criteria, and implementation steps. Be concise but thorough. "
        "Do not make any changes, just analyze and provide the prompt."
    )


def build_review_prompt(feature: str) -> str:
    return f"""Review the uncommitted changes in this repository against the original feature request.

FEATURE REQUEST:
{feature}

INSTRUCTIONS:
1. Run "git diff" to see all uncommitted changes
2. Evaluate if the changes correctly implement the feature request
3. Check for bugs, missing functionality, or issues
4. If the implementation is complete and correct, respond with "APPROVED"
5. If changes are needed, provide specific feedback on what needs to be fixed

Do not make any changes - only analyze and provide your review verdict."""


def build_feedback_prompt(feature: str, feedback: str, iteration: int) -> str:
    """Implementer prompt for iterations after a review requested changes."""
    return f"""You are continuing to implement a feature. This is iteration {iteration}.

ORIGINAL FEATURE REQUEST:
{feature}

REVIEWER FEEDBACK FROM PREVIOUS ATTEMPT:
{feedback}

Please address all the feedback points and complete the implementation.
Do not explain what you're doing - just make the changes."""


def format_iteration_header(iteration: int, max_iterations: int, phase: str) -> str:
    rule = "=" * 60
    return f"\n{rule}\nIteration {iteration}/{max_iterations} - {phase}\n{rule}"
