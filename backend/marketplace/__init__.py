"""
电商售后（退货 / 投诉）处理后端
"""
