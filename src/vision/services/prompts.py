from __future__ import annotations

"""Prompt builders for the studio pipelines.

Every builder returns a plain string; attachments are passed separately to the
gateway.
"""

from typing import Dict

from ..domain.models import AssistantRecord


LEVEL_INSTRUCTIONS: Dict[str, str] = {
    "Elementary": (
        "Target Audience: Elementary School (Ages 6-10). Style: Bright, simple, fun. "
        "Use large clear icons and very minimal text labels."
    ),
    "High School": (
        "Target Audience: High School. Style: Standard Textbook. Clean lines, clear labels, "
        "accurate maps or diagrams. Avoid cartoony elements."
    ),
    "College": (
        "Target Audience: University. Style: Academic Journal. High detail, data-rich, "
        "precise cross-sections or complex schematics."
    ),
    "Expert": (
        "Target Audience: Industry Expert. Style: Technical Blueprint/Schematic. Extremely dense "
        "detail, monochrome or technical coloring, precise annotations."
    ),
}
DEFAULT_LEVEL = "Target Audience: General Public. Style: Clear and engaging."

STYLE_INSTRUCTIONS: Dict[str, str] = {
    "Minimalist": (
        "Aesthetic: Bauhaus Minimalist. Flat vector art, limited color palette (2-3 colors), "
        "reliance on negative space and simple geometric shapes."
    ),
    "Realistic": (
        "Aesthetic: Photorealistic Composite. Cinematic lighting, highly detailed textures. "
        "Looks like a photograph."
    ),
    "Cartoon": "Aesthetic: Educational Comic. Vibrant colors, thick outlines, expressive cel-shaded style.",
    "Vintage": (
        "Aesthetic: 19th Century Scientific Lithograph. Engraving style, sepia tones, textured "
        "paper background, fine hatch lines."
    ),
    "Futuristic": (
        "Aesthetic: Cyberpunk HUD. Glowing neon blue/cyan lines on dark background, holographic "
        "data visualization, 3D wireframes."
    ),
    "3D Render": (
        "Aesthetic: 3D Isometric Render. Claymorphism or high-gloss plastic texture, studio "
        "lighting, soft shadows, looks like a physical model."
    ),
    "Sketch": "Aesthetic: Da Vinci Notebook. Ink on parchment sketch, handwritten annotation style.",
}
DEFAULT_STYLE = "Aesthetic: High-quality digital scientific illustration. Clean, modern, highly detailed."


def level_instruction(level: str) -> str:
    return LEVEL_INSTRUCTIONS.get(level, DEFAULT_LEVEL)


def style_instruction(style: str) -> str:
    return STYLE_INSTRUCTIONS.get(style, DEFAULT_STYLE)


def research_prompt(topic: str, level: str, style: str, language: str, aspect_ratio: str) -> str:
    return f"""You are an expert visual researcher.
Your goal is to research the topic: "{topic}" and create a plan for an infographic.

INSTRUCTIONS:
1. Research: you may use English for your own research and search queries.
2. FACTS: write the facts in {language} where possible.
3. IMAGE_PROMPT: this section goes to the image generator. It MUST tell the generator
   that any text, labels, titles or annotations inside the image are written in "{language}".

Context:
{level_instruction(level)}
{style_instruction(style)}
Target Output Language: {language}
Target Aspect Ratio: {aspect_ratio}

Answer in exactly this format:

FACTS:
- [Fact 1]
- [Fact 2]
- [Fact 3]

IMAGE_PROMPT:
[A detailed image generation prompt describing composition, colors and layout for a {aspect_ratio} aspect ratio.
End with: "All text, labels, and titles inside the image must be written in {language}."]
"""


def default_image_prompt(topic: str, level: str, style: str, language: str, aspect_ratio: str) -> str:
    """Prompt used when the research step yields no usable IMAGE_PROMPT."""
    return (
        f"Create a detailed infographic about {topic}. {level_instruction(level)} "
        f"{style_instruction(style)}. Layout: {aspect_ratio}. "
        f"Important: All text labels inside the image must be in {language}."
    )


CHAT_SYSTEM_INSTRUCTION = """You are a warm, patient assistant for people who are new to AI.
- Answer in the language the user writes in, unless asked otherwise.
- Keep technical detail out unless the user asks for more depth.
- When the user is stuck, give numbered step-by-step guidance.
- If you used search results, integrate them into the answer accurately.
"""


def title_prompt(text: str) -> str:
    return (
        "You are a title generator. Create a very short, descriptive title (max 5 words, in the "
        "same language as the input) for the following user message. Do not add quotes or any "
        f'other formatting.\n\nUser Message: "{text}"\n\nTitle:'
    )


TRANSCRIBE_PROMPT = """You are an expert at turning recordings into clean transcripts.
Transcribe the attached audio and format the output as follows:

1. Keywords: on the first line, 4-5 core keywords, each prefixed with '#', separated by spaces.
   Example: #keyword1 #keyword2 #keyword3
2. Leave one blank line after the keyword line, then write the body.
3. Remove filler words, repetitions and verbal tics so the text reads smoothly.
4. If you correct an obvious slip, mark it in parentheses right after the correction.
5. Do not add or remove core content.
6. Split the body into paragraphs by topic, without list-style subheadings.

Output only the final transcript, with no extra explanation.
"""


_REFINE_INSTRUCTIONS = {
    "organize": """You are a professional note taker. Turn the raw transcript below into concise,
well-formatted notes:
1. Remove filler words, repetitions and false starts.
2. Use Markdown: level-two headings, bold key terms, bullet points for key ideas.
3. Keep the speaker's meaning unchanged.
4. Mark suspected recognition errors in parentheses after the correction.
5. Start with a short title.""",
    "formalize": """You are a professional editor. Rewrite the raw transcript below as formal
written prose:
1. Convert colloquial phrasing into formal written language.
2. Keep every fact and the original order of ideas.
3. Use full paragraphs; no bullet lists.
4. Do not add content that is not in the transcript.""",
}


def refine_prompt(kind: str, text: str) -> str:
    try:
        instructions = _REFINE_INSTRUCTIONS[kind]
    except KeyError:
        raise ValueError(f"Unknown refinement kind: {kind}")
    return f"{instructions}\n\nRaw transcript:\n{text}"


def assistant_instruction(assistant: AssistantRecord) -> str:
    """Persona block appended to the chat system instruction."""
    lines = [f"You are a special assistant named {assistant.name}.", f"Your role is: {assistant.role}."]
    if assistant.personality:
        lines.append(f"Your personality is: {assistant.personality}.")
    if assistant.tone:
        lines.append(f"Your tone should be: {assistant.tone}.")
    lines.append(f"Your main task is: {assistant.task}.")
    lines.append(f"Follow these steps:\n{assistant.steps}")
    if assistant.format:
        lines.append(f"Format your output as: {assistant.format}.")
    return "\n".join(lines)


ANALYZE_IMAGE_PROMPT = (
    'Analyze this image and classify it into exactly one of these categories: "person" '
    '(a human is the main subject), "object" (a product, item or thing is the main subject) '
    'or "other" (landscapes, abstract art, text, screenshots). Return ONLY the category name '
    "in lowercase, with no other text."
)
