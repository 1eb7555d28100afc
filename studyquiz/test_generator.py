"""Generator tests (no external network required)."""

import json
import unittest
from unittest.mock import MagicMock, patch

import requests

from studyquiz.generator import (
    PLACEHOLDER_QUESTION,
    GeminiGenerator,
    GenerationError,
    InvalidContentError,
    build_mock_test_prompt,
    generate_mock_test,
    generate_quiz_content,
    parse_model_json,
    sanitize_flashcards,
    sanitize_questions,
)


def gemini_body(text: str) -> dict:
    return {'candidates': [{'content': {'role': 'model', 'parts': [{'text': text}]}}]}


def fake_generator(text: str) -> MagicMock:
    generator = MagicMock()
    generator.generate.return_value = text
    return generator


class GeminiGeneratorTest(unittest.TestCase):
    @patch('studyquiz.generator.requests.post')
    def test_generate_returns_candidate_text(self, mock_post) -> None:
        mock_post.return_value = MagicMock(status_code=200)
        mock_post.return_value.json.return_value = gemini_body('  {"questions": []}  ')

        text = GeminiGenerator('key', 'gemini-1.5-flash').generate('prompt')

        self.assertEqual(text, '{"questions": []}')
        url = mock_post.call_args[0][0]
        self.assertTrue(url.endswith('/gemini-1.5-flash:generateContent'))
        self.assertEqual(mock_post.call_args[1]['headers']['x-goog-api-key'], 'key')
        self.assertEqual(mock_post.call_args[1]['json']['contents'][0]['parts'][0]['text'], 'prompt')

    @patch('studyquiz.generator.requests.post')
    def test_http_error_raises(self, mock_post) -> None:
        mock_post.return_value = MagicMock(status_code=500, text='boom')
        with self.assertRaises(GenerationError):
            GeminiGenerator('key', 'model').generate('prompt')

    @patch('studyquiz.generator.requests.post')
    def test_network_error_raises(self, mock_post) -> None:
        mock_post.side_effect = requests.ConnectionError('offline')
        with self.assertRaises(GenerationError):
            GeminiGenerator('key', 'model').generate('prompt')

    @patch('studyquiz.generator.requests.post')
    def test_empty_candidates_raise(self, mock_post) -> None:
        mock_post.return_value = MagicMock(status_code=200)
        mock_post.return_value.json.return_value = {'candidates': []}
        with self.assertRaises(GenerationError):
            GeminiGenerator('key', 'model').generate('prompt')

    @patch('studyquiz.generator.requests.post')
    def test_missing_key_skips_request(self, mock_post) -> None:
        with self.assertRaises(GenerationError):
            GeminiGenerator('', 'model').generate('prompt')
        mock_post.assert_not_called()


class QuizContentTest(unittest.TestCase):
    def test_parse_model_json_strips_fences(self) -> None:
        self.assertEqual(parse_model_json('```json\n{"a": 1}\n```'), {'a': 1})
        with self.assertRaises(ValueError):
            parse_model_json('[1, 2]')

    def test_generate_quiz_content(self) -> None:
        generator = fake_generator(json.dumps({
            'questions': [{'question': 'Sky is blue?', 'type': 'true_false', 'answer': 'True'}],
            'flashcards': [{'term': 'Sky', 'definition': 'Above'}],
        }))

        content = generate_quiz_content(generator, 'notes', 'mix', 4, 1, include_flashcards=True)

        self.assertEqual(content['questions'][0]['question'], 'Sky is blue?')
        self.assertEqual(content['flashcards'], [{'term': 'Sky', 'definition': 'Above'}])
        prompt = generator.generate.call_args[0][0]
        self.assertIn('Generate exactly 1 quiz questions and flashcards', prompt)
        self.assertIn('"notes"', prompt)

    def test_flashcards_dropped_when_not_requested(self) -> None:
        generator = fake_generator(json.dumps({
            'questions': [{'question': 'Q', 'type': 'true_false', 'answer': 'False'}],
            'flashcards': [{'term': 'T', 'definition': 'D'}],
        }))

        content = generate_quiz_content(generator, 'notes', 'true_false', 4, 1, include_flashcards=False)

        self.assertEqual(content['flashcards'], [])

    def test_generator_failure_degrades_to_placeholder(self) -> None:
        generator = MagicMock()
        generator.generate.side_effect = GenerationError('quota exceeded')

        content = generate_quiz_content(generator, 'notes', 'mix', 4, 3, include_flashcards=True)

        self.assertEqual(content['questions'], [PLACEHOLDER_QUESTION])
        self.assertEqual(content['flashcards'], [{'term': 'Error', 'definition': 'Try again later'}])

    def test_non_json_output_degrades_to_placeholder(self) -> None:
        content = generate_quiz_content(fake_generator('Sure! Here are your questions'), 'notes', 'mix', 4, 3, False)

        self.assertEqual(content, {'questions': [PLACEHOLDER_QUESTION], 'flashcards': []})

    def test_sanitize_questions(self) -> None:
        questions = sanitize_questions([
            {'question': 'Pick one', 'type': 'multiple_choice', 'options': [1, 'b'], 'answer': 1},
            {'question': 'True?', 'type': 'true_false', 'options': ['x'], 'answer': 'True'},
            {'question': 'No options', 'type': 'MULTIPLE_CHOICE', 'answer': 'a'},
        ])

        self.assertEqual(questions[0], {
            'question': 'Pick one',
            'type': 'multiple_choice',
            'options': ['1', 'b'],
            'answer': '1',
        })
        self.assertEqual(questions[1]['options'], ['True', 'False'])
        self.assertEqual(questions[2]['options'], [])

    def test_sanitize_accepts_falsy_json_answers(self) -> None:
        questions = sanitize_questions([
            {'question': 'Is the moon a star?', 'type': 'true_false', 'answer': False},
            {'question': 'Pick zero', 'type': 'multiple_choice', 'options': [0, 1], 'answer': 0},
        ])

        self.assertEqual(questions[0]['answer'], 'False')
        self.assertEqual(questions[1]['answer'], '0')
        with self.assertRaises(InvalidContentError):
            sanitize_questions([{'question': 'Q', 'type': 'true_false', 'answer': ''}])

    def test_sanitize_rejects_incomplete_items(self) -> None:
        with self.assertRaises(InvalidContentError):
            sanitize_questions([{'question': 'Q', 'type': 'true_false'}])
        with self.assertRaises(InvalidContentError):
            sanitize_questions(['just a string'])
        with self.assertRaises(InvalidContentError):
            sanitize_flashcards([{'term': 'T'}])
        self.assertEqual(sanitize_flashcards([{'term': 1, 'definition': 2}]), [{'term': '1', 'definition': '2'}])


class MockTestTest(unittest.TestCase):
    def test_prompt_allows_two_minutes_per_question(self) -> None:
        prompt = build_mock_test_prompt('Algebra', 'Linear equations', 'hard', 7)
        self.assertIn('"time_allowed": "14 minutes"', prompt)
        self.assertIn('Difficulty Level: "hard"', prompt)

    def test_generate_mock_test_fills_defaults(self) -> None:
        generator = fake_generator('```json\n' + json.dumps({
            'mock_test': {
                'questions': [
                    {
                        'question_number': 1,
                        'question': '2x = 4, x = ?',
                        'options': ['A) 1', 'B) 2', 'C) 3', 'D) 4'],
                        'correct_answer': 'B',
                        'explanation': 'Divide by two.',
                    }
                ]
            }
        }) + '\n```')

        mock_test = generate_mock_test(generator, 'Algebra', 'Linear equations', 'easy', 5)

        self.assertEqual(mock_test['topic'], 'Algebra')
        self.assertEqual(mock_test['difficulty'], 'easy')
        self.assertEqual(mock_test['total_questions'], 1)
        self.assertEqual(mock_test['time_allowed'], '10 minutes')

    def test_invalid_json_is_a_generation_error(self) -> None:
        with self.assertRaises(GenerationError):
            generate_mock_test(fake_generator('not json'), 'Algebra', 'd', 'easy', 5)

    def test_missing_questions_is_invalid_content(self) -> None:
        with self.assertRaises(InvalidContentError):
            generate_mock_test(fake_generator('{"mock_test": {"questions": []}}'), 'Algebra', 'd', 'easy', 5)
        with self.assertRaises(InvalidContentError):
            generate_mock_test(fake_generator('{"test": {}}'), 'Algebra', 'd', 'easy', 5)


if __name__ == '__main__':
    unittest.main()
