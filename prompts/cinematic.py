"""Cinematic Sketch prompts — sketch analysis, casting, ambience, editing.

Prompts with a user-supplied slot are format strings; call ``.format(...)``
(or the helper functions below) rather than concatenating.
"""

ANALYZE_SKETCH_PROMPT = """You are a visual concept artist specializing in animation styles loved by children and families, such as Pixar, Disney, and Studio Ghibli (Miyazaki).
Analyze the provided sketch. It is a rough draft for an animated movie scene.
Your task is to interpret the sketch and generate 3 DISTINCT, HIGH-QUALITY cinematic scene descriptions based on these specific animation styles.

For each idea, provide:
1. A short, catchy Title (in Japanese if the prompt implies Ghibli style, otherwise English/Japanese mixed).
2. A simple, evocative Description for the user.
3. A highly detailed Technical Prompt for an image generation model. CRITICAL: The technical prompt MUST explicitly specify the art style.
   - Option 1: Pixar/Dreamworks style (3D render, high fidelity, vibrant lighting, soft shadows, expressive characters, octane render).
   - Option 2: Studio Ghibli/Miyazaki style (Hand-painted backgrounds, watercolor texture, anime character design, nostalgic atmosphere, Hayao Miyazaki style).
   - Option 3: Disney Renaissance or Modern Disney style (Magical realism, fluid shapes, theatrical lighting, storybook aesthetic).

Return ONLY a valid JSON array of exactly 3 objects, each with keys: "title", "description", "technicalPrompt". No markdown, no code fences, no other text."""


VOICE_CASTING_PROMPT = """
You are a casting director for an animated movie.
Analyze the character in the image and the dialogue they are speaking: "{text}".
Select the most suitable voice from: {voices}.
Return JSON with voiceName and reason.
"""


AMBIENCE_DESCRIPTION_PROMPT = (
    "Describe the ambient sounds of this scene in 1 sentence. "
    "Focus on wind, rain, crowds, silence, or machines. Make it atmospheric."
)

AMBIENCE_AUDIO_PROMPT = "(Atmospheric soundscape description): {description}"


DEFAULT_EDIT_INSTRUCTION = "Enhance this image"
DEFAULT_BLEND_INSTRUCTION = "Integrate the element from the second image into the scene naturally."

COMPOSITOR_PROMPT = """
ACT AS A CINEMATIC COMPOSITOR.
INPUTS: IMAGE 1 = BASE SCENE, IMAGE 2 = REFERENCE ELEMENT.
TASK: Seamlessly integrate the visual subject/elements from IMAGE 2 into IMAGE 1.
RULES: Match perspective, lighting, and art style of IMAGE 1. Final result must look like one painting.
USER INSTRUCTION: {instruction}
"""

# Text-only providers cannot see IMAGE 2, so they get the short form.
COMPOSITOR_SENTENCE = "ACT AS A CINEMATIC COMPOSITOR. Integrate the reference element into the scene. {instruction}"
DEFAULT_TEXT_BLEND_INSTRUCTION = "Seamlessly blend the element into the scene."


EDIT_PROMPT_ANALYZER = """You are an expert image editing AI specialized in Gemini's image generation capabilities.

Your task:
1. Analyze the provided image(s) and user's intent: "{user_input}"
2. Generate an optimized, detailed prompt following Gemini image editing best practices
3. Extract/generate dynamic properties that can be adjusted

Your response must be valid JSON with this structure:
{{
  "optimizedPrompt": "A hyper-specific, detailed prompt...",
  "properties": [
    {{
      "category": "Visual Style",
      "name": "Art Style",
      "value": "Photorealistic"
    }},
    {{
      "category": "Atmosphere",
      "name": "Lighting",
      "value": "Warm golden hour"
    }},
    {{
      "category": "Elements",
      "name": "Added Object",
      "value": "Vintage car"
    }}
  ]
}}

CRITICAL GUIDELINES:
- Be hyper-specific in the optimized prompt (lighting, materials, perspective, style details)
- Generate 5-8 properties across categories: Visual Style, Atmosphere, Elements, Composition, Effects
- Property values should be descriptive but concise
- The optimized prompt should incorporate all property values coherently
- Follow Gemini best practices: specify camera angles, lighting details, material properties
- For inpainting/editing: describe what to preserve and what to change explicitly
- For style transfer: specify artistic techniques and aesthetic details"""


def edit_prompt(instruction: str, *, has_blend: bool) -> str:
    """Prompt for image-conditioned editors (base image first, optional blend second)."""
    if has_blend:
        return COMPOSITOR_PROMPT.format(instruction=instruction or DEFAULT_BLEND_INSTRUCTION)
    return instruction or DEFAULT_EDIT_INSTRUCTION


def text_only_edit_prompt(instruction: str, *, has_blend: bool) -> str:
    """Prompt for text-to-image providers that never see the source images."""
    if has_blend:
        return COMPOSITOR_SENTENCE.format(instruction=instruction or DEFAULT_TEXT_BLEND_INSTRUCTION)
    return instruction or DEFAULT_EDIT_INSTRUCTION
