"""
LLM prompt templates.
"""

CODEGEN_SYSTEM_PROMPT = (
    "You are an expert digital hardware designer. You write clean, "
    "synthesizable Verilog-2005 that Yosys accepts without warnings."
)

CODEGEN_PROMPT = """Write a single synthesizable Verilog module for the following request:

{prompt}

Rules:
- Output ONLY the Verilog source code.
- Do not wrap the code in markdown fences.
- Do not add explanations before or after the code.
- Use descriptive port names and brief inline comments.
"""

EXPLAIN_LOG_PROMPT = """The following is a terminal log from the Yosys Verilog synthesizer. The compilation {outcome} with exit code {exit_code}.
Please analyze this log and provide a simple, beginner-friendly explanation of what happened.

- What did the synthesizer do?
- Were there any important warnings or errors (like syntax errors or undeclared variables)?
- What was the result (e.g., did it print statistics about the synthesized design)?
- Keep the explanation concise (2-4 paragraphs).

Here is the log:
---
{log}
---
"""
