"""
Image generation through the Google GenAI API.
Each prompt becomes one PNG, returned as a data URI ready for an <img> tag.
"""
import base64
import io
import logging

import google.genai as google_genai
from google.genai import types
from PIL import Image

import config
from errors import ImageGenerationFailed

logger = logging.getLogger(__name__)

# Anything smaller is almost certainly a placeholder, not a real render
MIN_IMAGE_KB = 10


def get_file_size_kb(image_bytes):
    """Calculate file size in KB from image bytes."""
    return len(image_bytes) / 1024.0


def to_data_uri(image_bytes, mime_type='image/png'):
    encoded = base64.b64encode(image_bytes).decode('utf-8')
    return f"data:{mime_type};base64,{encoded}"


def extract_image_bytes(response):
    """
    Pull the first image out of a generate_images response.
    Returns (image_bytes, error_message); exactly one of them is set.
    """
    generated = getattr(response, 'generated_images', None)
    if not generated:
        return None, 'API returned no images (possible policy violation or error)'

    first = generated[0]
    reason = getattr(first, 'rai_filtered_reason', None)
    image = getattr(first, 'image', None)
    image_bytes = getattr(image, 'image_bytes', None) if image else None
    if not image_bytes:
        if reason:
            return None, f'Content blocked: {reason}'
        return None, 'API returned success but no image data'

    if isinstance(image_bytes, str):
        image_bytes = base64.b64decode(image_bytes)
    return image_bytes, None


class ImageGenerator:
    """Turns prompts into images. The API client is created on first use."""

    def __init__(self, api_key=None, model=None, client=None, min_size_kb=MIN_IMAGE_KB):
        self.api_key = api_key if api_key is not None else config.GEMINI_API_KEY
        self.model = model or config.IMAGE_MODEL
        self.min_size_kb = min_size_kb
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = google_genai.Client(api_key=self.api_key)
        return self._client

    def generate(self, prompt):
        """Generate one image for `prompt` and return it as a data URI."""
        logger.info(f"[API REQUEST] Generating image for prompt: '{prompt}'")
        try:
            response = self.client.models.generate_images(
                model=self.model,
                prompt=prompt,
                config=types.GenerateImagesConfig(number_of_images=1, include_rai_reason=True),
            )
        except Exception as e:
            logger.error(f"❌ Image API call failed for '{prompt}': {e}")
            raise ImageGenerationFailed('Failed to generate images. Please try again.') from e

        image_bytes, error_message = extract_image_bytes(response)
        if error_message:
            logger.error(f"❌ No image for '{prompt}': {error_message}")
            raise ImageGenerationFailed('Failed to generate images. Please try again.')

        self.check_image(image_bytes, prompt)
        return to_data_uri(image_bytes)

    def check_image(self, image_bytes, prompt=''):
        """Reject payloads that are not decodable images or are suspiciously small."""
        try:
            with Image.open(io.BytesIO(image_bytes)) as img:
                img.verify()
        except Exception as e:
            logger.error(f"❌ Undecodable image for '{prompt}': {e}")
            raise ImageGenerationFailed('Image generation returned an invalid result.') from e

        file_size_kb = get_file_size_kb(image_bytes)
        if file_size_kb < self.min_size_kb:
            logger.warning(f"[WARNING] Small image detected for '{prompt}': {file_size_kb:.2f} KB")
            raise ImageGenerationFailed('Image generation returned an invalid result.')
