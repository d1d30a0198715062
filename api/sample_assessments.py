"""
api/sample_assessments.py — 기본 제공 샘플 퀴즈

ASSESSMENTS_FILE이 지정되지 않았을 때 저장소에 적재된다.
"""

from timed_quiz.models.assessment_model import AssessmentDefinition, Question

SAMPLE_ASSESSMENTS = [
    AssessmentDefinition(
        id="html-basics",
        title="HTML 기초 퀵 테스트",
        description="HTML 기본 태그와 문서 구조를 확인하는 짧은 퀴즈입니다.",
        duration=15,
        total_points=30,
        questions=[
            Question(
                id="q1",
                text="하이퍼링크를 만드는 태그는?",
                options=["<a>", "<link>", "<href>"],
                correct_option="<a>",
                points=15,
                explanation="<a href=\"...\"> 로 링크를 만든다. <link>는 외부 리소스 연결용.",
            ),
            Question(
                id="q2",
                text="<!DOCTYPE html>은 HTML5 문서를 선언한다.",
                options=["O", "X"],
                correct_option="O",
                points=15,
                explanation="HTML5의 문서 형식 선언은 <!DOCTYPE html> 한 줄이다.",
            ),
        ],
    ),
    AssessmentDefinition(
        id="js-async",
        title="Async/Await 챌린지",
        description="자바스크립트 비동기 처리 개념 확인.",
        duration=10,
        total_points=20,
        questions=[
            Question(
                id="q1",
                text="async 함수는 항상 무엇을 반환하는가?",
                options=["Promise", "undefined", "콜백 함수", "제너레이터"],
                correct_option="Promise",
                points=10,
                explanation="async 함수의 반환값은 Promise로 감싸진다.",
            ),
            Question(
                id="q2",
                text="await는 async 함수 밖 (모듈 최상위 제외)에서 쓸 수 있다.",
                options=["O", "X"],
                correct_option="X",
                points=10,
                explanation="일반 스크립트에서는 async 함수 안에서만 await를 쓸 수 있다.",
            ),
        ],
    ),
]
