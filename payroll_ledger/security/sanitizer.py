"""
Data Sanitizer Module - 数据清洗模块
Protects exported salary sheets against spreadsheet formula injection.
"""

from typing import Any

import pandas as pd


# Characters that trigger formula execution in spreadsheets
FORMULA_TRIGGERS = ('=', '+', '-', '@', '\t', '\r', '\n')


def sanitize_for_spreadsheet(value: Any) -> Any:
    """
    Prefix string values that would be evaluated as formulas.
    防止 Excel 公式注入攻击

    Examples:
        >>> sanitize_for_spreadsheet("=SUM(A1:A10)")
        "'=SUM(A1:A10)"
        >>> sanitize_for_spreadsheet("Bonus adjusted")
        'Bonus adjusted'
    """
    if not isinstance(value, str):
        return value

    stripped = value.lstrip()
    if stripped and stripped[0] in FORMULA_TRIGGERS:
        return "'" + value

    return value


def sanitize_dataframe_for_export(df: pd.DataFrame) -> pd.DataFrame:
    """
    Sanitize all string columns in a DataFrame for safe spreadsheet export.
    批量清洗 DataFrame 中的所有字符串列

    Numeric columns are left alone, so negative amounts stay numbers.
    """
    result = df.copy()

    for column in result.columns:
        series = result[column]
        # pandas 3 infers the "str" dtype for text columns
        if pd.api.types.is_object_dtype(series) or pd.api.types.is_string_dtype(series):
            result[column] = result[column].apply(sanitize_for_spreadsheet)

    return result
