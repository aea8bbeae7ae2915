"""Prompt catalog used as image generation input and as the guessing target."""
import random

IMAGE_PROMPTS = (
    "a simple pencil",
    "a computer keyboard",
    "a country house",
    "clouds in a blue sky",
    "a bright sun",
    "a sewing needle",
    "a coffee cup",
    "an open book",
    "a wooden chair",
    "a green tree",
    "a red car",
    "a green apple",
    "a yellow banana",
    "a smartphone",
    "a wristwatch",
    "a football",
    "an acoustic guitar",
    "an old camera",
    "a bicycle",
    "a small boat",
    "a snowy mountain",
    "a calm river",
    "a sunflower",
    "a colorful butterfly",
    "a cute cat",
    "a friendly dog",
    "a wise owl",
    "a goldfish",
    "the Eiffel Tower",
    "the Pyramids of Giza",
)


def pick_prompt_pair(catalog=IMAGE_PROMPTS, rng=random):
    """
    Pick two different prompts uniformly at random.
    The second prompt is redrawn until it differs from the first.
    """
    if len(set(catalog)) < 2:
        raise ValueError('Prompt catalog needs at least two distinct prompts')

    first = rng.choice(catalog)
    second = first
    while second == first:
        second = rng.choice(catalog)
    return first, second
